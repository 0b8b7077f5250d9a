"""
Command Line Interface Module

Provides CLI commands for runner VM template generation and deployment.
"""

import sys
import argparse
import logging
import traceback
from pathlib import Path
from typing import Any, Dict, Optional
import json

from .config_loader import ConfigLoader
from .validator import ConfigValidator, check_template_references
from .bootstrap import BootstrapScriptBuilder
from .orchestrator import Orchestrator, write_private_file
from .template_builder import TemplateBuilder


class RunnerSmithCLI:
    """Command-line interface for RunnerSmith."""

    def __init__(self):
        """Initialize the CLI."""
        self.parser = self._create_parser()

    def _create_parser(self) -> argparse.ArgumentParser:
        """Create the argument parser."""
        parser = argparse.ArgumentParser(
            prog='runnersmith',
            description='RunnerSmith - Azure Self-Hosted Runner Deployment Builder',
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog="""
Examples:
  # Validate configuration
  runnersmith validate --config config/examples/ssh-runner.yaml

  # Generate ARM template without deploying
  runnersmith generate --config config/examples/ssh-runner.yaml --output template.json

  # Show the first-boot script
  runnersmith script --config config/examples/ssh-runner.yaml

  # Preview, then deploy
  runnersmith what-if --config config/examples/ssh-runner.yaml
  runnersmith deploy --config config/examples/ssh-runner.yaml

  # Remove the runner VM and its network resources
  runnersmith destroy --config config/examples/ssh-runner.yaml
            """
        )

        subparsers = parser.add_subparsers(dest='command', help='Available commands')

        # Deploy command
        deploy_parser = subparsers.add_parser(
            'deploy',
            help='Deploy the runner VM'
        )
        self._add_config_argument(deploy_parser)
        deploy_parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Validate and generate template without deploying'
        )
        deploy_parser.add_argument(
            '--subscription-id',
            help='Azure subscription ID'
        )
        self._add_verbose_argument(deploy_parser)

        # Validate command
        validate_parser = subparsers.add_parser(
            'validate',
            help='Validate configuration file'
        )
        self._add_config_argument(validate_parser)

        # Generate command
        generate_parser = subparsers.add_parser(
            'generate',
            help='Generate ARM template from configuration'
        )
        self._add_config_argument(generate_parser)
        generate_parser.add_argument(
            '--output', '-o',
            required=True,
            help='Output path for generated ARM template'
        )
        generate_parser.add_argument(
            '--format',
            choices=['json', 'yaml'],
            default='json',
            help='Output format (default: json)'
        )
        generate_parser.add_argument(
            '--parameters-output',
            help='Also write a deployment parameters file (contains secrets)'
        )

        # Script command
        script_parser = subparsers.add_parser(
            'script',
            help='Print the first-boot runner bootstrap script'
        )
        self._add_config_argument(script_parser)
        script_parser.add_argument(
            '--output', '-o',
            help='Write the script to a file instead of stdout'
        )
        script_parser.add_argument(
            '--with-token',
            action='store_true',
            help='Substitute the configured registration token'
        )

        # What-if command
        whatif_parser = subparsers.add_parser(
            'what-if',
            help='Preview the changes a deployment would make'
        )
        self._add_config_argument(whatif_parser)
        whatif_parser.add_argument(
            '--subscription-id',
            help='Azure subscription ID'
        )
        self._add_verbose_argument(whatif_parser)

        # Status command
        status_parser = subparsers.add_parser(
            'status',
            help='Show the deployment status'
        )
        self._add_config_argument(status_parser)

        # Destroy command
        destroy_parser = subparsers.add_parser(
            'destroy',
            help='Delete the runner VM and its network resources'
        )
        self._add_config_argument(destroy_parser)
        destroy_parser.add_argument(
            '--force',
            action='store_true',
            help='Skip confirmation prompt'
        )
        destroy_parser.add_argument(
            '--subscription-id',
            help='Azure subscription ID'
        )

        # Version command
        subparsers.add_parser('version', help='Show version information')

        return parser

    def _add_config_argument(self, parser: argparse.ArgumentParser):
        parser.add_argument(
            '--config', '-c',
            required=True,
            help='Path to YAML configuration file'
        )

    def _add_verbose_argument(self, parser: argparse.ArgumentParser):
        parser.add_argument(
            '--verbose', '-v',
            action='store_true',
            help='Enable verbose output'
        )

    def run(self, args: Optional[list] = None) -> int:
        """
        Run the CLI with the given arguments.

        Args:
            args: Command-line arguments (defaults to sys.argv[1:])

        Returns:
            Process exit code
        """
        parsed_args = self.parser.parse_args(args)

        if not parsed_args.command:
            self.parser.print_help()
            return 1

        verbose = getattr(parsed_args, 'verbose', False)
        logging.basicConfig(
            level=logging.DEBUG if verbose else logging.WARNING,
            format='%(asctime)s %(levelname)s %(name)s: %(message)s'
        )

        handlers = {
            'deploy': self._deploy,
            'validate': self._validate,
            'generate': self._generate,
            'script': self._script,
            'what-if': self._what_if,
            'status': self._status,
            'destroy': self._destroy,
        }

        try:
            if parsed_args.command == 'version':
                return self._version()
            return handlers[parsed_args.command](parsed_args)
        except Exception as e:
            print(f"Error: {e}", file=sys.stderr)
            if verbose:
                traceback.print_exc()
            return 1

    def _load_and_validate(self, config_path: str) -> Optional[Dict[str, Any]]:
        """
        Load and validate a configuration, printing findings.

        Returns:
            The configuration, or None when invalid
        """
        print(f"Loading configuration from {config_path}...")

        loader = ConfigLoader(config_path)
        config = loader.load()

        print("Validating configuration...")

        validator = ConfigValidator()
        is_valid, errors, warnings = validator.validate(config)

        if warnings:
            print("\nWarnings:")
            for warning in warnings:
                print(f"  ⚠️  {warning}")

        if not is_valid:
            print("\nValidation failed:")
            for error in errors:
                print(f"  ❌ {error}")
            return None

        print("✅ Configuration is valid")
        return config

    def _build_template(self, config: Dict[str, Any]) -> TemplateBuilder:
        """Build the template and check its internal references."""
        builder = TemplateBuilder(config)
        template = builder.build()

        problems = check_template_references(template, builder.external_references())
        if problems:
            raise ValueError(
                "Generated template has dangling references:\n  " + "\n  ".join(problems)
            )

        return builder

    def _deploy(self, args) -> int:
        """Handle deploy command."""
        config = self._load_and_validate(args.config)
        if config is None:
            return 1

        print("\nGenerating ARM template...")
        template = self._build_template(config).template

        if args.dry_run:
            print("\n✅ Dry run completed successfully")
            print(f"Template would deploy {len(template['resources'])} resources")
            return 0

        print("\nDeploying to Azure...")
        orchestrator = Orchestrator(config, template)

        if args.subscription_id:
            orchestrator.set_subscription(args.subscription_id)

        success = orchestrator.deploy(verbose=args.verbose)

        if success:
            print("\n✅ Deployment completed successfully")
            orchestrator.print_connection_info()
            return 0
        else:
            print("\n❌ Deployment failed")
            return 1

    def _validate(self, args) -> int:
        """Handle validate command."""
        config = self._load_and_validate(args.config)
        if config is None:
            print("\n❌ Configuration is invalid")
            return 1
        return 0

    def _generate(self, args) -> int:
        """Handle generate command."""
        config = self._load_and_validate(args.config)
        if config is None:
            return 1

        print("Generating ARM template...")
        builder = self._build_template(config)
        builder.save_template(args.output, fmt=args.format)
        print(f"\n✅ Template generated: {args.output}")

        if args.parameters_output:
            parameters = Orchestrator(config, builder.template).build_parameters()
            write_private_file(args.parameters_output, json.dumps(parameters, indent=2))
            print(f"✅ Parameters generated: {args.parameters_output}")

        return 0

    def _script(self, args) -> int:
        """Handle script command."""
        loader = ConfigLoader(args.config)
        config = loader.load()

        builder = BootstrapScriptBuilder(config)
        token = None
        if args.with_token:
            token = Orchestrator(config, {}).registration_token()

        script = builder.render(token)

        if not args.output:
            sys.stdout.write(script)
            return 0

        if token:
            write_private_file(args.output, script)
        else:
            with open(Path(args.output), 'w', encoding='utf-8', newline='\n') as f:
                f.write(script)
        print(f"✅ Script written: {args.output}")
        return 0

    def _what_if(self, args) -> int:
        """Handle what-if command."""
        config = self._load_and_validate(args.config)
        if config is None:
            return 1

        template = self._build_template(config).template
        orchestrator = Orchestrator(config, template)

        if args.subscription_id:
            orchestrator.set_subscription(args.subscription_id)

        return 0 if orchestrator.what_if() else 1

    def _status(self, args) -> int:
        """Handle status command."""
        loader = ConfigLoader(args.config)
        config = loader.load()

        orchestrator = Orchestrator(config, {})
        status = orchestrator.get_deployment_status()

        if status is None:
            print(f"No deployment '{orchestrator.deployment_name}' found "
                  f"in resource group '{orchestrator.resource_group}'")
            return 1

        properties = status.get('properties', {})
        print(f"Deployment: {status.get('name', orchestrator.deployment_name)}")
        print(f"State: {properties.get('provisioningState', 'Unknown')}")
        print(f"Timestamp: {properties.get('timestamp', 'N/A')}")

        outputs = properties.get('outputs') or {}
        if outputs:
            print("\nOutputs:")
            for name, output in outputs.items():
                print(f"  {name}: {output.get('value')}")

        return 0

    def _destroy(self, args) -> int:
        """Handle destroy command."""
        loader = ConfigLoader(args.config)
        config = loader.load()

        vm_name = config.get('virtual_machine', {}).get('name', 'unknown')
        resource_group = config.get('resource_group', 'rg-runnersmith')

        if not args.force:
            response = input(
                f"\n⚠️  This will delete VM '{vm_name}' and its network resources "
                f"in resource group '{resource_group}'.\n"
                f"Are you sure? (yes/no): "
            )
            if response.lower() != 'yes':
                print("Aborted.")
                return 0

        orchestrator = Orchestrator(config, {})
        if args.subscription_id:
            orchestrator.set_subscription(args.subscription_id)

        success = orchestrator.destroy()

        if success:
            print("\n✅ Resources destroyed successfully")
            return 0
        else:
            print("\n❌ Destroy operation failed")
            return 1

    def _version(self) -> int:
        """Handle version command."""
        from . import __version__, __author__
        print(f"RunnerSmith version {__version__}")
        print(f"Author: {__author__}")
        return 0


def main():
    """Main entry point for the CLI."""
    cli = RunnerSmithCLI()
    sys.exit(cli.run())


if __name__ == '__main__':
    main()
