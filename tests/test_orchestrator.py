"""Tests for the Azure CLI orchestrator."""

import json
import os
import stat
import subprocess
import tempfile
from pathlib import Path
from typing import Any, Dict, List
from unittest.mock import patch

import pytest

from runnersmith.orchestrator import Orchestrator, write_private_file
from runnersmith.template_builder import TemplateBuilder

from conftest import SSH_KEY, TOKEN


class FakeAz:
    """Record az invocations and return canned results."""

    def __init__(self, returncodes: Dict[str, int] = None, stdout: Dict[str, str] = None):
        self.calls: List[List[str]] = []
        self.returncodes = returncodes or {}
        self.stdout = stdout or {}
        self.files_seen: Dict[str, Any] = {}

    def __call__(self, cmd, **kwargs):
        self.calls.append(cmd)
        key = " ".join(cmd[1:3])

        if "--template-file" in cmd:
            template_path = Path(cmd[cmd.index("--template-file") + 1])
            params_path = Path(cmd[cmd.index("--parameters") + 1].lstrip("@"))
            self.files_seen = {
                "template_path": template_path,
                "params_path": params_path,
                "template": json.loads(template_path.read_text(encoding="utf-8")),
                "parameters": json.loads(params_path.read_text(encoding="utf-8")),
                "params_mode": stat.S_IMODE(params_path.stat().st_mode),
            }

        return subprocess.CompletedProcess(
            cmd,
            self.returncodes.get(key, 0),
            stdout=self.stdout.get(key, ""),
            stderr="",
        )

    def commands(self) -> List[str]:
        return [" ".join(c[1:]) for c in self.calls]


@pytest.fixture
def orchestrator(ssh_config) -> Orchestrator:
    template = TemplateBuilder(ssh_config).build()
    return Orchestrator(ssh_config, template)


class TestParameters:
    """Tests for deployment parameter generation."""

    def test_ssh_parameters(self, orchestrator) -> None:
        parameters = orchestrator.build_parameters()["parameters"]

        assert parameters["adminPasswordOrKey"]["value"] == SSH_KEY
        assert parameters["runnerRegistrationToken"]["value"] == TOKEN
        assert parameters["adminUsername"]["value"] == "azureuser"
        assert parameters["location"]["value"] == "westeurope"

    def test_password_parameters(self, password_config) -> None:
        parameters = Orchestrator(password_config, {}).build_parameters()["parameters"]

        assert parameters["adminPasswordOrKey"]["value"] == "S3cure-Passw0rd!"
        assert parameters["adminUsername"]["value"] == "runneradmin"

    def test_missing_token(self, ssh_config) -> None:
        del ssh_config["runner"]["registration_token"]

        with pytest.raises(ValueError) as exc_info:
            Orchestrator(ssh_config, {}).build_parameters()

        assert "runner.registration_token" in str(exc_info.value)

    def test_unresolved_secret(self, password_config) -> None:
        password_config["credentials"]["admin_password"] = "${RUNNER_ADMIN_PASSWORD}"

        with pytest.raises(ValueError) as exc_info:
            Orchestrator(password_config, {}).build_parameters()

        assert "RUNNER_ADMIN_PASSWORD" in str(exc_info.value)

    def test_registration_token(self, orchestrator) -> None:
        assert orchestrator.registration_token() == TOKEN


class TestDeploy:
    """Tests for deploy and what-if."""

    def test_deploy_success(self, orchestrator, capsys) -> None:
        fake = FakeAz()
        with patch("runnersmith.orchestrator.subprocess.run", side_effect=fake):
            assert orchestrator.deploy() is True

        commands = fake.commands()
        assert commands[0] == "--version"
        assert commands[1] == "group create --name rg-ci-runners --location westeurope"
        assert commands[2].startswith(
            "deployment group create --resource-group rg-ci-runners --name gh-runner-deployment"
        )

        # Files existed during the call and are removed afterwards
        assert fake.files_seen["template"] == orchestrator.template
        assert fake.files_seen["parameters"]["parameters"]["runnerRegistrationToken"]["value"] == TOKEN
        assert not fake.files_seen["template_path"].exists()
        assert not fake.files_seen["params_path"].exists()

    @pytest.mark.skipif(os.name == "nt", reason="POSIX permissions")
    def test_parameters_file_is_private(self, orchestrator, tmp_path: Path, monkeypatch) -> None:
        """Test that secrets never land in a pre-existing readable file."""
        monkeypatch.setattr(tempfile, "tempdir", str(tmp_path))
        stale = tmp_path / "gh-runner-deployment-params.json"
        stale.write_text("{}", encoding="utf-8")
        stale.chmod(0o644)

        fake = FakeAz()
        with patch("runnersmith.orchestrator.subprocess.run", side_effect=fake):
            assert orchestrator.deploy() is True

        assert fake.files_seen["params_path"].parent == tmp_path
        assert fake.files_seen["params_path"] != stale
        assert fake.files_seen["params_mode"] == 0o600
        assert stale.read_text(encoding="utf-8") == "{}"
        assert list(tmp_path.iterdir()) == [stale]

    def test_deploy_sets_subscription(self, orchestrator) -> None:
        fake = FakeAz()
        orchestrator.set_subscription("0000-sub")
        with patch("runnersmith.orchestrator.subprocess.run", side_effect=fake):
            assert orchestrator.deploy(verbose=True) is True

        commands = fake.commands()
        assert "account set --subscription 0000-sub" in commands
        assert commands[-1].endswith("--verbose")

    def test_deploy_without_cli(self, orchestrator, capsys) -> None:
        fake = FakeAz(returncodes={"--version": 1})
        with patch("runnersmith.orchestrator.subprocess.run", side_effect=fake):
            assert orchestrator.deploy() is False

        assert len(fake.calls) == 1
        assert "Azure CLI is not installed" in capsys.readouterr().out

    def test_deploy_cli_missing_binary(self, orchestrator) -> None:
        with patch("runnersmith.orchestrator.subprocess.run", side_effect=FileNotFoundError("az")):
            assert orchestrator.deploy() is False

    def test_deploy_failure(self, orchestrator) -> None:
        fake = FakeAz(returncodes={"deployment group": 1})
        with patch("runnersmith.orchestrator.subprocess.run", side_effect=fake):
            assert orchestrator.deploy() is False

    def test_deploy_missing_secret_raises_before_az(self, ssh_config) -> None:
        del ssh_config["credentials"]["ssh_public_key"]
        fake = FakeAz()
        with patch("runnersmith.orchestrator.subprocess.run", side_effect=fake):
            with pytest.raises(ValueError):
                Orchestrator(ssh_config, {}).deploy()

        assert fake.calls == []

    def test_what_if(self, orchestrator) -> None:
        fake = FakeAz()
        with patch("runnersmith.orchestrator.subprocess.run", side_effect=fake):
            assert orchestrator.what_if() is True

        assert fake.commands()[-1].startswith("deployment group what-if --resource-group rg-ci-runners")
        assert "group create --name rg-ci-runners --location westeurope" not in fake.commands()


class TestStatusAndDestroy:
    """Tests for status and teardown."""

    def test_status_parsed(self, orchestrator) -> None:
        payload = {"name": "gh-runner-deployment", "properties": {"provisioningState": "Succeeded"}}
        fake = FakeAz(stdout={"deployment group": json.dumps(payload)})
        with patch("runnersmith.orchestrator.subprocess.run", side_effect=fake):
            assert orchestrator.get_deployment_status() == payload

    def test_status_missing(self, orchestrator) -> None:
        fake = FakeAz(returncodes={"deployment group": 3})
        with patch("runnersmith.orchestrator.subprocess.run", side_effect=fake):
            assert orchestrator.get_deployment_status() is None

    def test_destroy_deletes_dependents_first(self, orchestrator) -> None:
        fake = FakeAz(stdout={"account show": "1111-sub\n"})
        with patch("runnersmith.orchestrator.subprocess.run", side_effect=fake):
            assert orchestrator.destroy() is True

        prefix = "/subscriptions/1111-sub/resourceGroups/rg-ci-runners/providers/"
        deleted = [c[-1] for c in fake.calls if c[1:3] == ["resource", "delete"]]
        assert deleted == [
            prefix + "Microsoft.Compute/virtualMachines/vm-runner-01/extensions/InstallRunner",
            prefix + "Microsoft.Compute/virtualMachines/vm-runner-01",
            prefix + "Microsoft.Network/networkInterfaces/nic-vm-runner-01",
            prefix + "Microsoft.Network/virtualNetworks/vnet-shared/subnets/snet-runners",
            prefix + "Microsoft.Network/networkSecurityGroups/nsg-runners",
        ]

    def test_destroy_uses_configured_subscription(self, orchestrator) -> None:
        fake = FakeAz()
        orchestrator.set_subscription("2222-sub")
        with patch("runnersmith.orchestrator.subprocess.run", side_effect=fake):
            assert orchestrator.destroy() is True

        assert not any(c[1:3] == ["account", "show"] for c in fake.calls)
        assert "/subscriptions/2222-sub/" in fake.calls[0][-1]

    def test_destroy_reports_failures(self, orchestrator) -> None:
        fake = FakeAz(returncodes={"resource delete": 1}, stdout={"account show": "1111-sub"})
        with patch("runnersmith.orchestrator.subprocess.run", side_effect=fake):
            assert orchestrator.destroy() is False

    def test_destroy_without_subscription(self, orchestrator) -> None:
        fake = FakeAz(returncodes={"account show": 1})
        with patch("runnersmith.orchestrator.subprocess.run", side_effect=fake):
            assert orchestrator.destroy() is False

    def test_connection_info_hides_secrets(self, password_config, capsys) -> None:
        Orchestrator(password_config, {}).print_connection_info()

        out = capsys.readouterr().out
        assert "vm-runner-01" in out
        assert "runneradmin" in out
        assert "S3cure-Passw0rd!" not in out
        assert TOKEN not in out


@pytest.mark.skipif(os.name == "nt", reason="POSIX permissions")
class TestPrivateFiles:
    """Tests for writing secret-bearing files."""

    def test_existing_file_replaced_with_private_one(self, tmp_path: Path) -> None:
        path = tmp_path / "params.json"
        path.write_text("old", encoding="utf-8")
        path.chmod(0o644)

        write_private_file(path, "secret")

        assert path.read_text(encoding="utf-8") == "secret"
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_symlink_not_followed(self, tmp_path: Path) -> None:
        target = tmp_path / "elsewhere.txt"
        target.write_text("untouched", encoding="utf-8")
        link = tmp_path / "params.json"
        link.symlink_to(target)

        write_private_file(link, "secret")

        assert not link.is_symlink()
        assert link.read_text(encoding="utf-8") == "secret"
        assert target.read_text(encoding="utf-8") == "untouched"
