"""
Orchestrator Module

Coordinates deployment and teardown of the runner VM through the Azure CLI.
"""

from typing import Dict, Any, Optional, Tuple
import subprocess
import tempfile
import logging
import json
import os
from pathlib import Path

from .bootstrap import BootstrapScriptBuilder
from .config_loader import ENV_REFERENCE
from .template_builder import TemplateBuilder

logger = logging.getLogger(__name__)


def write_private_file(path, content: str):
    """
    Write secret-bearing content to a file readable by the owner only.

    An existing file or symlink at the path is replaced, not written through.

    Args:
        path: Destination path
        content: Text to write
    """
    path = Path(path)
    try:
        path.unlink()
    except FileNotFoundError:
        pass

    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, 'w', encoding='utf-8', newline='\n') as f:
        f.write(content)


class Orchestrator:
    """Orchestrate Azure deployments."""

    def __init__(self, config: Dict[str, Any], template: Dict[str, Any]):
        """
        Initialize the Orchestrator.

        Args:
            config: Parsed configuration dictionary
            template: Generated ARM template
        """
        self.config = config
        self.template = template
        self.subscription_id: Optional[str] = config.get('subscription_id')
        self.deployment_name = f"{config.get('name', 'runnersmith')}-deployment"
        self.resource_group = config.get('resource_group', 'rg-runnersmith')
        self.location = config.get('location', 'eastus')

    def set_subscription(self, subscription_id: str):
        """Set the Azure subscription ID."""
        self.subscription_id = subscription_id

    def deploy(self, verbose: bool = False) -> bool:
        """
        Deploy the runner VM to Azure.

        Args:
            verbose: Enable verbose output

        Returns:
            True if deployment succeeded, False otherwise

        Raises:
            ValueError: If a required secret is missing
        """
        # Fail before touching Azure when secrets are missing
        parameters = self.build_parameters()

        try:
            if not self._prepare():
                return False

            print(f"Creating resource group: {self.resource_group}")
            self._create_resource_group()

            print(f"Starting deployment: {self.deployment_name}")
            with self._deployment_files(parameters) as (template_path, params_path):
                cmd = [
                    'deployment', 'group', 'create',
                    '--resource-group', self.resource_group,
                    '--name', self.deployment_name,
                    '--template-file', str(template_path),
                    '--parameters', f"@{params_path}"
                ]

                if verbose:
                    cmd.append('--verbose')

                result = self._run_az_command(cmd)

            return result.returncode == 0

        except (OSError, subprocess.SubprocessError) as e:
            logger.debug("Deployment failed", exc_info=True)
            print(f"Deployment error: {e}")
            return False

    def what_if(self) -> bool:
        """
        Preview the changes the deployment would make.

        Returns:
            True if the preview ran successfully, False otherwise
        """
        parameters = self.build_parameters()

        try:
            if not self._prepare():
                return False

            with self._deployment_files(parameters) as (template_path, params_path):
                result = self._run_az_command([
                    'deployment', 'group', 'what-if',
                    '--resource-group', self.resource_group,
                    '--name', self.deployment_name,
                    '--template-file', str(template_path),
                    '--parameters', f"@{params_path}"
                ])

            return result.returncode == 0

        except (OSError, subprocess.SubprocessError) as e:
            logger.debug("What-if failed", exc_info=True)
            print(f"What-if error: {e}")
            return False

    def destroy(self) -> bool:
        """
        Delete the resources this deployment declared, dependents first.

        The resource group and an existing virtual network are left in place.

        Returns:
            True if every deletion succeeded, False otherwise
        """
        try:
            subscription_id = self.subscription_id or self._get_current_subscription()
            if not subscription_id:
                print("❌ Could not determine the Azure subscription")
                return False

            builder = TemplateBuilder(self.config)
            success = True

            for resource_type, name in builder.resource_ids():
                resource_id = self._resource_id(subscription_id, resource_type, name)
                print(f"Deleting {resource_type.split('/')[-1]}: {name}")
                result = self._run_az_command(['resource', 'delete', '--ids', resource_id])
                if result.returncode != 0:
                    print(f"  ❌ Failed to delete {name}")
                    success = False

            return success

        except (OSError, subprocess.SubprocessError) as e:
            logger.debug("Destroy failed", exc_info=True)
            print(f"Destroy error: {e}")
            return False

    def get_deployment_status(self) -> Optional[Dict[str, Any]]:
        """
        Get the status of the deployment.

        Returns:
            Deployment status dictionary or None
        """
        try:
            result = self._run_az_command([
                'deployment', 'group', 'show',
                '--resource-group', self.resource_group,
                '--name', self.deployment_name,
                '--output', 'json'
            ], capture_output=True)

            if result.returncode == 0:
                return json.loads(result.stdout)
            return None
        except (OSError, subprocess.SubprocessError, json.JSONDecodeError):
            logger.debug("Could not read deployment status", exc_info=True)
            return None

    def print_connection_info(self):
        """Print connection information for deployed resources."""
        vm = self.config.get('virtual_machine', {})
        network = self.config.get('network', {})
        creds = self.config.get('credentials', {})
        script = BootstrapScriptBuilder(self.config)

        print("\n" + "="*60)
        print("CONNECTION INFORMATION")
        print("="*60)

        print(f"\nResource Group: {self.resource_group}")
        print(f"Location: {self.location}")

        print(f"\nVirtual Machine: {vm.get('name')} ({vm.get('size', 'Standard_B2s')})")
        print(f"  Subnet: {network.get('vnet_name')}/{network.get('subnet', {}).get('name')}")
        print(f"  Private IP: {vm.get('private_ip', 'Dynamic')}")

        auth_type = creds.get('authentication_type', 'sshPublicKey')
        print(f"\nAdmin Username: {creds.get('admin_username', 'N/A')}")
        if auth_type == 'password':
            print("Authentication: password <configured>")
        else:
            print("Authentication: SSH public key")

        labels = script.get_labels()
        print(f"\nRunner: {script.runner_name}")
        print(f"  Repository: {self.config.get('runner', {}).get('repository_url')}")
        print(f"  Labels: {', '.join(labels) if labels else '(default)'}")

        print("\n" + "="*60)

    def _prepare(self) -> bool:
        """Check the Azure CLI and select the subscription."""
        if not self._check_azure_cli():
            print("❌ Azure CLI is not installed or not in PATH")
            print("   Install from: https://learn.microsoft.com/cli/azure/install-azure-cli")
            return False

        if self.subscription_id:
            print(f"Setting subscription: {self.subscription_id}")
            result = self._run_az_command(['account', 'set', '--subscription', self.subscription_id])
            if result.returncode != 0:
                print(f"❌ Could not select subscription {self.subscription_id}")
                return False

        return True

    def _deployment_files(self, parameters: Dict[str, Any]) -> '_DeploymentFiles':
        return _DeploymentFiles(self.deployment_name, self.template, parameters)

    def _check_azure_cli(self) -> bool:
        """Check if Azure CLI is installed."""
        try:
            result = self._run_az_command(['--version'], capture_output=True, timeout=30)
            return result.returncode == 0
        except (OSError, subprocess.SubprocessError):
            return False

    def _get_current_subscription(self) -> Optional[str]:
        result = self._run_az_command(
            ['account', 'show', '--query', 'id', '--output', 'tsv'],
            capture_output=True
        )
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def _create_resource_group(self):
        """Create the Azure resource group."""
        self._run_az_command([
            'group', 'create',
            '--name', self.resource_group,
            '--location', self.location
        ])

    def _resource_id(self, subscription_id: str, resource_type: str, name: str) -> str:
        """
        Build a full resource ID, including child resources.

        Args:
            subscription_id: Azure subscription ID
            resource_type: e.g. 'Microsoft.Compute/virtualMachines/extensions'
            name: e.g. 'vm-runner/InstallRunner'

        Returns:
            Resource ID string
        """
        namespace, *types = resource_type.split('/')
        names = name.split('/')
        segments = [f"{t}/{n}" for t, n in zip(types, names)]

        return (
            f"/subscriptions/{subscription_id}/resourceGroups/{self.resource_group}"
            f"/providers/{namespace}/" + "/".join(segments)
        )

    def _run_az_command(self, args: list, capture_output: bool = False, timeout: int = 1800):
        """
        Run an Azure CLI command.

        Args:
            args: Command arguments
            capture_output: Whether to capture output
            timeout: Seconds before the command is abandoned

        Returns:
            CompletedProcess instance
        """
        # On Windows the CLI is a batch wrapper
        cmd = (['az.cmd'] if os.name == 'nt' else ['az']) + args
        logger.debug("Running: %s", " ".join(cmd))

        if capture_output:
            return subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout
            )
        return subprocess.run(cmd, timeout=timeout)

    def build_parameters(self) -> Dict[str, Any]:
        """
        Build ARM deployment parameters from configuration.

        Returns:
            Parameters dictionary

        Raises:
            ValueError: If a secret is missing or references an unset variable
        """
        creds = self.config.get('credentials', {})

        if creds.get('authentication_type', 'sshPublicKey') == 'password':
            secret = self._require_secret(creds.get('admin_password'), 'credentials.admin_password')
        else:
            secret = self._require_secret(creds.get('ssh_public_key'), 'credentials.ssh_public_key')

        token = self.registration_token()

        return {
            "$schema": "https://schema.management.azure.com/schemas/2019-04-01/deploymentParameters.json#",
            "contentVersion": "1.0.0.0",
            "parameters": {
                "location": {
                    "value": self.location
                },
                "adminUsername": {
                    "value": creds.get('admin_username', 'azureuser')
                },
                "adminPasswordOrKey": {
                    "value": secret
                },
                "runnerRegistrationToken": {
                    "value": token
                }
            }
        }

    def registration_token(self) -> str:
        """
        Get the runner registration token.

        Raises:
            ValueError: If the token is missing or references an unset variable
        """
        runner = self.config.get('runner', {})
        return self._require_secret(runner.get('registration_token'), 'runner.registration_token')

    def _require_secret(self, value: Optional[str], key: str) -> str:
        if not value:
            raise ValueError(f"Missing required secret '{key}'")
        match = ENV_REFERENCE.search(value)
        if match:
            raise ValueError(
                f"Secret '{key}' references unset environment variable {match.group(1)}"
            )
        return value.strip()


class _DeploymentFiles:
    """Template and parameters files in the temp dir, removed on exit."""

    def __init__(self, deployment_name: str, template: Dict[str, Any], parameters: Dict[str, Any]):
        self.deployment_name = deployment_name
        self.template = template
        self.parameters = parameters
        self.template_path: Optional[Path] = None
        self.params_path: Optional[Path] = None

    def __enter__(self) -> Tuple[Path, Path]:
        self.template_path = self._write(".json", self.template)
        try:
            # mkstemp creates the file exclusively with mode 0600
            self.params_path = self._write("-params.json", self.parameters)
        except OSError:
            self.__exit__(None, None, None)
            raise
        return self.template_path, self.params_path

    def _write(self, suffix: str, content: Dict[str, Any]) -> Path:
        fd, name = tempfile.mkstemp(prefix=f"{self.deployment_name}-", suffix=suffix)
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(content, f, indent=2)
        return Path(name)

    def __exit__(self, exc_type, exc, tb):
        for path in (self.template_path, self.params_path):
            if path is None:
                continue
            try:
                path.unlink()
            except FileNotFoundError:
                pass
        return False
