"""
Configuration Loader Module

Handles loading and parsing YAML configuration files for runner deployments.
"""

import os
import re
from pathlib import Path
from typing import Dict, Any, List, Optional
import yaml


ENV_REFERENCE = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}')

DEFAULT_TOKEN_VARIABLE = 'RUNNER_REGISTRATION_TOKEN'


class ConfigLoader:
    """Load and parse YAML configuration files."""

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize the ConfigLoader.

        Args:
            config_path: Path to the YAML configuration file
        """
        self.config_path = config_path
        self.config: Dict[str, Any] = {}
        self.base_dir = Path.cwd()
        self._unresolved: List[str] = []

    def load(self, config_path: Optional[str] = None) -> Dict[str, Any]:
        """
        Load configuration from YAML file.

        Args:
            config_path: Path to the YAML configuration file

        Returns:
            Dictionary containing the parsed configuration

        Raises:
            FileNotFoundError: If the configuration file doesn't exist
            ValueError: If no path is given or the document is not a mapping
            yaml.YAMLError: If the YAML is malformed
        """
        path = config_path or self.config_path

        if not path:
            raise ValueError("No configuration path provided")

        config_file = Path(path)

        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Error parsing YAML configuration: {e}")

        if not isinstance(data, dict):
            raise ValueError(f"Configuration root must be a mapping: {path}")

        self.config_path = str(config_file)
        self.base_dir = config_file.resolve().parent
        self.config = data

        self._unresolved = []
        self.config = self._expand_env(self.config)
        self._apply_secret_defaults()
        self._resolve_paths()

        return self.config

    def _expand_env(self, value: Any) -> Any:
        """Expand ${VAR} references from the environment, recursively."""
        if isinstance(value, dict):
            return {k: self._expand_env(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._expand_env(v) for v in value]
        if isinstance(value, str):
            return ENV_REFERENCE.sub(self._substitute, value)
        return value

    def _substitute(self, match) -> str:
        name = match.group(1)
        if name in os.environ:
            return os.environ[name]
        # Left as-is; the validator warns and the orchestrator refuses to deploy
        if name not in self._unresolved:
            self._unresolved.append(name)
        return match.group(0)

    def _apply_secret_defaults(self):
        """Fall back to RUNNER_REGISTRATION_TOKEN when no token is configured."""
        runner = self.config.get('runner')
        if not isinstance(runner, dict) or runner.get('registration_token'):
            return

        runner['registration_token'] = self._expand_env(f"${{{DEFAULT_TOKEN_VARIABLE}}}")

    def _resolve_paths(self):
        """Resolve relative paths in the configuration."""
        creds = self.config.get('credentials')
        if not isinstance(creds, dict):
            return

        key_path = creds.get('ssh_public_key_path')
        if not key_path or creds.get('ssh_public_key'):
            return

        # Password mode ignores the key; the validator warns about it
        if creds.get('authentication_type') == 'password':
            return

        path = Path(key_path).expanduser()
        if not path.is_absolute():
            path = self.base_dir / path

        if not path.exists():
            raise FileNotFoundError(f"SSH public key file not found: {path}")

        creds['ssh_public_key'] = path.read_text(encoding='utf-8').strip()

    def unresolved_references(self) -> List[str]:
        """
        Get environment variables referenced by the config but not set.

        Returns:
            Variable names, in order of first appearance
        """
        return list(self._unresolved)

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value by key.

        Args:
            key: Configuration key (supports dot notation, e.g., 'network.vnet_name')
            default: Default value if key doesn't exist

        Returns:
            Configuration value or default
        """
        keys = key.split('.')
        value = self.config

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
                if value is None:
                    return default
            else:
                return default

        return value

    def get_network_config(self) -> Dict[str, Any]:
        """Get network configuration section."""
        return self.config.get('network', {})

    def get_vm_config(self) -> Dict[str, Any]:
        """Get virtual machine configuration section."""
        return self.config.get('virtual_machine', {})

    def get_credentials(self) -> Dict[str, str]:
        """Get credentials configuration section."""
        return self.config.get('credentials', {})

    def get_runner_config(self) -> Dict[str, Any]:
        """Get runner configuration section."""
        return self.config.get('runner', {})

    def get_tags(self) -> Dict[str, str]:
        """Get tags configuration section."""
        return self.config.get('tags', {})

    def get_authentication_type(self) -> str:
        """
        Get the VM authentication mode.

        Returns:
            'password' or 'sshPublicKey' (the default)
        """
        return self.get_credentials().get('authentication_type', 'sshPublicKey')

    def validate_structure(self) -> bool:
        """
        Perform basic structure validation.

        Returns:
            True if basic structure is valid

        Raises:
            ValueError: If required fields are missing
        """
        required_fields = ['name', 'location', 'network', 'virtual_machine', 'credentials', 'runner']

        for field in required_fields:
            if field not in self.config:
                raise ValueError(f"Required field '{field}' missing from configuration")

        return True

    def to_dict(self) -> Dict[str, Any]:
        """
        Get the full configuration as a dictionary.

        Returns:
            Complete configuration dictionary
        """
        return self.config.copy()
