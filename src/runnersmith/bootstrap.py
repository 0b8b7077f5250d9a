"""
Bootstrap Script Module

Builds the first-boot shell script that installs a container runtime and the
Azure CLI, then registers and starts a GitHub Actions self-hosted runner.
"""

import shlex
from typing import Dict, Any, List, Optional


TOKEN_PLACEHOLDER = "__RUNNER_TOKEN__"

RUNNER_RELEASES_API = "https://api.github.com/repos/actions/runner/releases/latest"
RUNNER_DOWNLOAD_URL = (
    "https://github.com/actions/runner/releases/download/"
    "v${RUNNER_VERSION}/actions-runner-linux-${RUNNER_ARCH}-${RUNNER_VERSION}.tar.gz"
)

BASE_PACKAGES = ['curl', 'jq', 'tar', 'ca-certificates']

# Installer per tool: (binary probed with `command -v`, install command)
TOOL_INSTALLERS = {
    'docker': ('docker', "curl -fsSL https://get.docker.com | sh"),
    'azure_cli': ('az', "curl -fsSL https://aka.ms/InstallAzureCLIDeb | bash"),
}


class BootstrapScriptBuilder:
    """Build the runner bootstrap script from configuration."""

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize the BootstrapScriptBuilder.

        Args:
            config: Parsed configuration dictionary
        """
        self.config = config
        self.runner = config.get('runner', {})
        self.lines: List[str] = []

    @property
    def runner_name(self) -> str:
        """Runner name, defaulting to the VM name."""
        vm_name = self.config.get('virtual_machine', {}).get('name', 'runner')
        return self.runner.get('name') or vm_name

    @property
    def runner_user(self) -> str:
        """Local account the runner service runs as."""
        admin = self.config.get('credentials', {}).get('admin_username', 'azureuser')
        return self.runner.get('user') or admin

    @property
    def runner_version(self) -> str:
        """Pinned runner release without a leading 'v', or 'latest'."""
        version = str(self.runner.get('version', 'latest'))
        if version[:1] in ('v', 'V') and version[1:2].isdigit():
            return version[1:]
        return version

    def get_labels(self) -> List[str]:
        """
        Get the custom runner labels.

        Returns:
            Configured labels, plus 'env-<environment>' when an environment is set
        """
        labels = list(self.runner.get('labels', []))
        environment = self.runner.get('environment')
        if environment:
            env_label = f"env-{environment}"
            if env_label not in labels:
                labels.append(env_label)
        return labels

    def build(self) -> str:
        """
        Build the bootstrap script.

        The registration token is left as a placeholder so the deployment
        engine can substitute it from a secure parameter.

        Returns:
            Script text
        """
        self.lines = []

        self._add_header()
        self._add_variables()
        self._add_base_packages()

        if self.runner.get('install_docker', True):
            self._add_tool_install('docker')
            self.lines.append('if getent group docker >/dev/null 2>&1; then')
            self.lines.append('    usermod -aG docker "$RUNNER_USER"')
            self.lines.append('fi')
            self.lines.append('')

        if self.runner.get('install_azure_cli', True):
            self._add_tool_install('azure_cli')

        self._add_runner_download()
        self._add_runner_registration()
        self._add_runner_service()

        return "\n".join(self.lines) + "\n"

    def render(self, token: Optional[str] = None) -> str:
        """
        Build the script with the token placeholder replaced.

        Args:
            token: Registration token; the placeholder is kept when None

        Returns:
            Script text
        """
        script = self.build()
        if token is None:
            return script
        return script.replace(TOKEN_PLACEHOLDER, token)

    def _add_header(self):
        self.lines.extend([
            '#!/bin/bash',
            '# Provisions a GitHub Actions self-hosted runner on first boot.',
            'set -euo pipefail',
            '',
            'export DEBIAN_FRONTEND=noninteractive',
            '',
        ])

    def _add_variables(self):
        """Emit the substituted values as shell-quoted assignments."""
        values = [
            ('RUNNER_REPO_URL', self.runner.get('repository_url', '')),
            ('RUNNER_NAME', self.runner_name),
            ('RUNNER_LABELS', ','.join(self.get_labels())),
            ('RUNNER_ENVIRONMENT', self.runner.get('environment', '')),
            ('RUNNER_GROUP', self.runner.get('group', '')),
            ('RUNNER_USER', self.runner_user),
            ('RUNNER_VERSION', self.runner_version),
            ('RUNNER_ARCH', self.runner.get('architecture', 'x64')),
            ('RUNNER_WORK_DIR', self.runner.get('work_dir', '_work')),
            ('RUNNER_HOME', self.runner.get('install_dir', '/opt/actions-runner')),
        ]

        for name, value in values:
            self.lines.append(f"{name}={shlex.quote(value)}")

        self.lines.append(f"RUNNER_TOKEN='{TOKEN_PLACEHOLDER}'")
        self.lines.append('')

    def _add_base_packages(self):
        self.lines.extend([
            'apt-get update -y',
            f"apt-get install -y {' '.join(BASE_PACKAGES)}",
            '',
        ])

    def _add_tool_install(self, tool: str):
        binary, install_command = TOOL_INSTALLERS[tool]
        self.lines.extend([
            f"if ! command -v {binary} >/dev/null 2>&1; then",
            f"    {install_command}",
            'fi',
            '',
        ])

    def _add_runner_download(self):
        """Resolve the release and unpack it unless already present."""
        self.lines.extend([
            'if [ "$RUNNER_VERSION" = "latest" ]; then',
            f"    RUNNER_VERSION=\"$(curl -fsSL {RUNNER_RELEASES_API} | jq -r '.tag_name' | sed 's/^v//')\"",
            'fi',
            '',
            'mkdir -p "$RUNNER_HOME"',
            'cd "$RUNNER_HOME"',
            '',
            'if [ ! -x ./config.sh ]; then',
            f"    curl -fsSL -o actions-runner.tar.gz \"{RUNNER_DOWNLOAD_URL}\"",
            '    tar xzf actions-runner.tar.gz',
            '    rm -f actions-runner.tar.gz',
            'fi',
            '',
            'chown -R "$RUNNER_USER":"$RUNNER_USER" "$RUNNER_HOME"',
            './bin/installdependencies.sh',
            '',
        ])

    def _build_config_args(self) -> List[str]:
        """Arguments for config.sh, referencing the script variables."""
        args = [
            '--unattended',
            '--url "$RUNNER_REPO_URL"',
            '--token "$RUNNER_TOKEN"',
            '--name "$RUNNER_NAME"',
            '--work "$RUNNER_WORK_DIR"',
            '--replace',
        ]
        if self.get_labels():
            args.append('--labels "$RUNNER_LABELS"')
        if self.runner.get('group'):
            args.append('--runnergroup "$RUNNER_GROUP"')
        return args

    def _add_runner_registration(self):
        config_args = " ".join(self._build_config_args())

        # .runner is written by config.sh on successful registration
        self.lines.extend([
            'if [ ! -f .runner ]; then',
            f"    sudo -u \"$RUNNER_USER\" ./config.sh {config_args}",
            'fi',
            '',
        ])

        if self.runner.get('environment'):
            self.lines.extend([
                'if ! grep -q "^RUNNER_ENVIRONMENT=" .env 2>/dev/null; then',
                '    echo "RUNNER_ENVIRONMENT=$RUNNER_ENVIRONMENT" >> .env',
                '    chown "$RUNNER_USER":"$RUNNER_USER" .env',
                'fi',
                '',
            ])

    def _add_runner_service(self):
        # .service is written by svc.sh install
        self.lines.extend([
            'if [ ! -f .service ]; then',
            '    ./svc.sh install "$RUNNER_USER"',
            'fi',
            './svc.sh start',
        ])
