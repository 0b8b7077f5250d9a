"""Pytest configuration and fixtures."""

import copy
import sys
from pathlib import Path
from typing import Any, Callable, Dict

import pytest
import yaml

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for shared constants
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))


SSH_KEY = (
    "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIHk3bXJ0ZXN0a2V5Zm9ydW5uZXJzbWl0aHRlc3Rz "
    "runner@ci"
)

TOKEN = "AABBCCDDEEFF00112233445566"

BASE_CONFIG: Dict[str, Any] = {
    "name": "gh-runner",
    "resource_group": "rg-ci-runners",
    "location": "westeurope",
    "tags": {"workload": "ci", "owner": "platform"},
    "network": {
        "vnet_name": "vnet-shared",
        "subnet": {"name": "snet-runners", "address_prefix": "10.0.5.0/24"},
        "nsg": {"name": "nsg-runners", "rules": []},
    },
    "virtual_machine": {
        "name": "vm-runner-01",
        "size": "Standard_D2s_v5",
    },
    "credentials": {
        "admin_username": "azureuser",
        "authentication_type": "sshPublicKey",
        "ssh_public_key": SSH_KEY,
    },
    "runner": {
        "repository_url": "https://github.com/example-org/example-repo",
        "labels": ["docker", "azure"],
        "environment": "production",
        "registration_token": TOKEN,
    },
}


@pytest.fixture
def ssh_config() -> Dict[str, Any]:
    """A valid configuration using SSH key authentication."""
    return copy.deepcopy(BASE_CONFIG)


@pytest.fixture
def password_config() -> Dict[str, Any]:
    """A valid configuration using password authentication."""
    config = copy.deepcopy(BASE_CONFIG)
    config["credentials"] = {
        "admin_username": "runneradmin",
        "authentication_type": "password",
        "admin_password": "S3cure-Passw0rd!",
    }
    return config


@pytest.fixture
def write_config(tmp_path: Path) -> Callable[[Dict[str, Any]], Path]:
    """Write a configuration dictionary to a YAML file and return its path."""

    def _write(config: Dict[str, Any], name: str = "runner.yaml") -> Path:
        path = tmp_path / name
        path.write_text(yaml.safe_dump(config), encoding="utf-8")
        return path

    return _write
