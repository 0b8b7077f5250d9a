"""
Configuration Validator Module

Validates YAML configuration against the schema and performs semantic validation.
Also checks generated templates for dangling resource references.
"""

import re
import ipaddress
from pathlib import Path
from typing import Dict, Any, Iterable, List, Tuple
import yaml
from jsonschema import validate, ValidationError

from .config_loader import ENV_REFERENCE


SCHEMA_FILENAME = "runner-config.schema.yaml"

# Azure rejects these as admin user names on Linux VMs
RESERVED_USERNAMES = {
    'administrator', 'admin', 'user', 'user1', 'test', 'user2', 'test1', 'user3',
    'admin1', '1', '123', 'a', 'actuser', 'adm', 'admin2', 'aspnet', 'backup',
    'console', 'david', 'guest', 'john', 'owner', 'root', 'server', 'sql',
    'support', 'support_388945a0', 'sys', 'test2', 'test3', 'user4', 'user5',
}

SSH_KEY_PATTERN = re.compile(
    r'^(ssh-rsa|ssh-ed25519|ecdsa-sha2-nistp(256|384|521)|sk-ssh-ed25519@openssh\.com) '
    r'[A-Za-z0-9+/]+=*( .*)?$'
)

LINUX_VM_NAME_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9-]{0,63}$')

# Becomes a runner label and a .env entry
ENVIRONMENT_PATTERN = re.compile(r'^[A-Za-z0-9_.-]+$')

RESOURCE_ID_PATTERN = re.compile(
    r"resourceId\(\s*'([^']+)'((?:\s*,\s*'[^']*')+)\s*\)"
)

# First four addresses and the last one in every Azure subnet are reserved
AZURE_RESERVED_LEADING = 4


class ConfigValidator:
    """Validate configuration files against schema and business rules."""

    def __init__(self, schema_path: str = None):
        """
        Initialize the ConfigValidator.

        Args:
            schema_path: Path to the YAML-encoded JSON schema file
        """
        if schema_path is None:
            schema_path = self._find_schema_file()

        self.schema_path = Path(schema_path)
        self.schema = self._load_schema()
        self.errors: List[str] = []
        self.warnings: List[str] = []

    def _find_schema_file(self) -> Path:
        """Find the schema shipped with the package, then in the working directory."""
        packaged = Path(__file__).parent / "schemas" / SCHEMA_FILENAME
        if packaged.exists():
            return packaged

        cwd_schema = Path.cwd() / "schemas" / SCHEMA_FILENAME
        if cwd_schema.exists():
            return cwd_schema

        raise FileNotFoundError(
            f"Could not find schema file. Tried:\n"
            f"  - {packaged}\n"
            f"  - {cwd_schema}\n"
            f"Please ensure RunnerSmith is properly installed."
        )

    def _load_schema(self) -> Dict[str, Any]:
        """Load the JSON schema from file."""
        if not self.schema_path.exists():
            raise FileNotFoundError(f"Schema file not found: {self.schema_path}")

        with open(self.schema_path, 'r', encoding='utf-8') as f:
            return yaml.safe_load(f)

    def validate(self, config: Dict[str, Any]) -> Tuple[bool, List[str], List[str]]:
        """
        Validate configuration against schema and business rules.

        Args:
            config: Configuration dictionary to validate

        Returns:
            Tuple of (is_valid, errors, warnings)
        """
        self.errors = []
        self.warnings = []

        # Schema validation
        try:
            validate(instance=config, schema=self.schema)
        except ValidationError as e:
            location = '.'.join(str(p) for p in e.absolute_path)
            prefix = f" at '{location}'" if location else ""
            self.errors.append(f"Schema validation error{prefix}: {e.message}")
            return False, self.errors, self.warnings

        # Semantic validation
        self._validate_credentials(config)
        self._validate_network(config)
        self._validate_virtual_machine(config)
        self._validate_runner(config)
        self._validate_tags(config)

        is_valid = len(self.errors) == 0
        return is_valid, self.errors, self.warnings

    def _validate_credentials(self, config: Dict[str, Any]):
        """Validate that the chosen authentication mode has exactly one credential."""
        creds = config.get('credentials', {})
        auth_type = creds.get('authentication_type', 'sshPublicKey')
        username = creds.get('admin_username', '')
        password = creds.get('admin_password')
        ssh_key = creds.get('ssh_public_key')

        if username.lower() in RESERVED_USERNAMES:
            self.errors.append(f"Admin username '{username}' is reserved by Azure")
        elif not re.match(r'^[A-Za-z_][A-Za-z0-9_.-]{0,63}$', username):
            self.errors.append(
                f"Admin username '{username}' must start with a letter or '_' "
                f"and contain only letters, digits, '.', '-' or '_'"
            )

        if auth_type == 'password':
            if ssh_key or creds.get('ssh_public_key_path'):
                self.warnings.append(
                    "SSH public key is ignored for password authentication"
                )
            if not password:
                self.errors.append(
                    "authentication_type is 'password' but 'admin_password' is not provided"
                )
            elif self._is_unresolved(password):
                self.warnings.append(
                    "admin_password references an unset environment variable"
                )
            elif not self._is_complex_password(password):
                self.errors.append(
                    "admin_password must be 12-123 characters and contain 3 of: "
                    "lowercase, uppercase, digit, special character"
                )
        else:
            if password:
                self.warnings.append(
                    "admin_password is ignored for sshPublicKey authentication"
                )
            if not ssh_key:
                self.errors.append(
                    "authentication_type is 'sshPublicKey' but no SSH public key is provided"
                )
            elif self._is_unresolved(ssh_key):
                self.warnings.append(
                    "ssh_public_key references an unset environment variable"
                )
            elif not SSH_KEY_PATTERN.match(ssh_key.strip()):
                self.errors.append("ssh_public_key is not a valid OpenSSH public key")

    def _validate_network(self, config: Dict[str, Any]):
        """Validate network configuration."""
        network = config.get('network', {})
        subnet_config = network.get('subnet', {})
        subnet_prefix = subnet_config.get('address_prefix', '')

        subnet = self._parse_network(subnet_prefix)
        if subnet is None:
            self.errors.append(
                f"Subnet {subnet_config.get('name')} has invalid address prefix '{subnet_prefix}'"
            )
        elif subnet.prefixlen > 29:
            self.errors.append(
                f"Subnet prefix {subnet_prefix} is smaller than the Azure minimum /29"
            )

        address_space = network.get('address_space')
        if network.get('create_vnet') and not address_space:
            self.errors.append("create_vnet is set but 'address_space' is not provided")

        if address_space:
            vnet = self._parse_network(address_space)
            if vnet is None:
                self.errors.append(f"Invalid VNet address space '{address_space}'")
            elif subnet is not None and not self._is_subnet_in_vnet(subnet, vnet):
                self.errors.append(
                    f"Subnet {subnet_config.get('name')} range {subnet_prefix} "
                    f"is not within VNet range {address_space}"
                )

        private_ip = config.get('virtual_machine', {}).get('private_ip')
        if private_ip and subnet is not None:
            self._validate_private_ip(private_ip, subnet)

        self._validate_nsg_rules(network.get('nsg', {}).get('rules', []))

    def _validate_private_ip(self, private_ip: str, subnet):
        try:
            ip_addr = ipaddress.ip_address(private_ip)
        except ValueError:
            self.errors.append(f"Invalid private IP address '{private_ip}'")
            return

        if ip_addr not in subnet:
            self.errors.append(
                f"IP {private_ip} is not in subnet range {subnet}"
            )
            return

        offset = int(ip_addr) - int(subnet.network_address)
        if offset < AZURE_RESERVED_LEADING or ip_addr == subnet.broadcast_address:
            self.errors.append(
                f"IP {private_ip} is reserved by Azure in subnet {subnet}"
            )

    def _validate_nsg_rules(self, rules: List[Dict[str, Any]]):
        """Validate NSG rule priorities and names."""
        seen_priorities = set()
        seen_names = set()

        for rule in rules:
            name = rule.get('name')
            if name in seen_names:
                self.errors.append(f"Duplicate NSG rule name: {name}")
            seen_names.add(name)

            priority = rule.get('priority')
            if not 100 <= priority <= 4096:
                self.errors.append(
                    f"NSG rule '{name}' priority {priority} must be between 100 and 4096"
                )

            key = (rule.get('direction'), priority)
            if key in seen_priorities:
                self.errors.append(
                    f"NSG rule '{name}' reuses {rule.get('direction')} priority {priority}"
                )
            seen_priorities.add(key)

    def _validate_virtual_machine(self, config: Dict[str, Any]):
        """Validate virtual machine configuration."""
        vm_name = config.get('virtual_machine', {}).get('name', '')

        if not LINUX_VM_NAME_PATTERN.match(vm_name) or vm_name.endswith('-'):
            self.errors.append(
                f"VM name '{vm_name}' must be 1-64 letters, digits or hyphens "
                f"and must not start or end with a hyphen"
            )

    def _validate_runner(self, config: Dict[str, Any]):
        """Validate runner registration settings."""
        runner = config.get('runner', {})

        url = runner.get('repository_url', '')
        if not self._is_valid_url(url):
            self.errors.append(f"Invalid runner repository URL: {url}")

        name = runner.get('name') or config.get('virtual_machine', {}).get('name', '')
        if len(name) > 64:
            self.errors.append(f"Runner name '{name}' exceeds 64 character limit")

        environment = runner.get('environment')
        if environment and not ENVIRONMENT_PATTERN.fullmatch(environment):
            self.errors.append(
                f"Runner environment '{environment}' may only contain letters, digits, '.', '-' or '_'"
            )

        labels = runner.get('labels', [])
        for label in labels:
            if ',' in label:
                self.errors.append(f"Runner label '{label}' must not contain commas")
        duplicates = sorted({label for label in labels if labels.count(label) > 1})
        for label in duplicates:
            self.warnings.append(f"Duplicate runner label: {label}")

        token = runner.get('registration_token')
        if not token:
            self.warnings.append(
                "No runner registration token configured; supply one at deploy time"
            )
        elif self._is_unresolved(token):
            self.warnings.append(
                "registration_token references an unset environment variable"
            )
        elif "'" in token:
            self.errors.append("registration_token must not contain single quotes")

    def _validate_tags(self, config: Dict[str, Any]):
        """Validate resource tags against Azure limits."""
        tags = config.get('tags', {})

        if len(tags) > 50:
            self.errors.append(f"Too many tags ({len(tags)}); Azure allows 50")

        for key, value in tags.items():
            if len(str(key)) > 512:
                self.errors.append(f"Tag name '{str(key)[:32]}...' exceeds 512 characters")
            if len(str(value)) > 256:
                self.errors.append(f"Tag '{key}' value exceeds 256 characters")

    def _is_valid_url(self, url: str) -> bool:
        """Validate URL format."""
        if not url:
            return False
        url_pattern = re.compile(
            r'^https?://'  # http:// or https://
            r'(?:(?:[A-Z0-9](?:[A-Z0-9-]{0,61}[A-Z0-9])?\.)+[A-Z]{2,6}\.?|'  # domain...
            r'localhost|'  # localhost...
            r'\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3})'  # ...or ip
            r'(?::\d+)?'  # optional port
            r'(?:/?|[/?]\S+)$', re.IGNORECASE)
        return url_pattern.match(url) is not None

    def _is_complex_password(self, password: str) -> bool:
        if not 12 <= len(password) <= 123:
            return False
        classes = [
            any(c.islower() for c in password),
            any(c.isupper() for c in password),
            any(c.isdigit() for c in password),
            any(not c.isalnum() for c in password),
        ]
        return sum(classes) >= 3

    def _is_unresolved(self, value: str) -> bool:
        return ENV_REFERENCE.search(value) is not None

    def _parse_network(self, cidr: str):
        try:
            return ipaddress.ip_network(cidr, strict=False)
        except ValueError:
            return None

    def _is_subnet_in_vnet(self, subnet, vnet) -> bool:
        """Check if subnet network is within VNet network."""
        if subnet.version != vnet.version:
            return False
        return subnet.subnet_of(vnet)

    def get_errors(self) -> List[str]:
        """Get validation errors."""
        return self.errors

    def get_warnings(self) -> List[str]:
        """Get validation warnings."""
        return self.warnings


def _declared_resources(template: Dict[str, Any]) -> set:
    """Collect (type, name) pairs declared by a template, including inline subnets."""
    declared = set()
    for resource in template.get('resources', []):
        declared.add((resource.get('type'), resource.get('name')))
        if resource.get('type') == 'Microsoft.Network/virtualNetworks':
            for subnet in resource.get('properties', {}).get('subnets', []):
                declared.add((
                    'Microsoft.Network/virtualNetworks/subnets',
                    f"{resource.get('name')}/{subnet.get('name')}"
                ))
    return declared


def _iter_strings(value: Any) -> Iterable[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from _iter_strings(item)
    elif isinstance(value, list):
        for item in value:
            yield from _iter_strings(item)


def check_template_references(template: Dict[str, Any],
                              external: Iterable[Tuple[str, str]] = ()) -> List[str]:
    """
    Check that every resourceId() reference points at a declared resource.

    Args:
        template: ARM template dictionary
        external: (type, name) pairs that exist outside the template

    Returns:
        One message per dangling reference (empty when all resolve)
    """
    declared = _declared_resources(template)
    known = declared | set(external)
    problems = []

    for resource in template.get('resources', []):
        owner = f"{resource.get('type')} '{resource.get('name')}'"

        for dependency in resource.get('dependsOn', []):
            match = RESOURCE_ID_PATTERN.search(dependency)
            if match is None:
                problems.append(f"{owner} has unparseable dependsOn entry: {dependency}")
                continue
            target = _reference_target(match)
            if target not in declared:
                problems.append(f"{owner} depends on undeclared resource {target[0]} '{target[1]}'")

        for text in _iter_strings(resource.get('properties', {})):
            for match in RESOURCE_ID_PATTERN.finditer(text):
                target = _reference_target(match)
                if target not in known:
                    problems.append(f"{owner} references unknown resource {target[0]} '{target[1]}'")

    for name, output in template.get('outputs', {}).items():
        for text in _iter_strings(output):
            for match in RESOURCE_ID_PATTERN.finditer(text):
                target = _reference_target(match)
                if target not in known:
                    problems.append(f"Output '{name}' references unknown resource {target[0]} '{target[1]}'")

    return problems


def _reference_target(match) -> Tuple[str, str]:
    resource_type = match.group(1)
    names = re.findall(r"'([^']*)'", match.group(2))
    return resource_type, '/'.join(names)
