"""
Template Builder Module

Builds ARM templates for a self-hosted runner VM from configuration.
"""

from typing import Dict, Any, List, Tuple
from pathlib import Path
import json

import yaml

from .bootstrap import BootstrapScriptBuilder, TOKEN_PLACEHOLDER


NETWORK_API_VERSION = "2023-04-01"
COMPUTE_API_VERSION = "2023-03-01"

DEFAULT_IMAGE = {
    "publisher": "Canonical",
    "offer": "0001-com-ubuntu-server-jammy",
    "sku": "22_04-lts-gen2",
    "version": "latest"
}


class TemplateBuilder:
    """Build ARM templates from configuration."""

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize the TemplateBuilder.

        Args:
            config: Parsed configuration dictionary
        """
        self.config = config
        self.template: Dict[str, Any] = {
            "$schema": "https://schema.management.azure.com/schemas/2019-04-01/deploymentTemplate.json#",
            "contentVersion": "1.0.0.0",
            "parameters": {},
            "variables": {},
            "resources": [],
            "outputs": {}
        }

        network = config.get('network', {})
        subnet = network.get('subnet', {})
        vm = config.get('virtual_machine', {})

        self.vnet_name = network.get('vnet_name', 'vnet-runners')
        self.subnet_name = subnet.get('name', 'snet-runners')
        self.nsg_name = network.get('nsg', {}).get('name') or f"nsg-{self.subnet_name}"
        self.vm_name = vm.get('name', 'vm-runner')
        self.nic_name = f"nic-{self.vm_name}"
        self.extension_name = f"{self.vm_name}/InstallRunner"

    @property
    def authentication_type(self) -> str:
        return self.config.get('credentials', {}).get('authentication_type', 'sshPublicKey')

    @property
    def creates_vnet(self) -> bool:
        return bool(self.config.get('network', {}).get('create_vnet', False))

    def _get_tags(self) -> Dict[str, str]:
        """Tags applied to every resource; ARM requires string values."""
        return {str(k): str(v) for k, v in self.config.get('tags', {}).items()}

    def build(self) -> Dict[str, Any]:
        """
        Build the complete ARM template.

        Returns:
            Complete ARM template dictionary
        """
        self.template["resources"] = []

        self._add_parameters()
        self._add_variables()

        # NSG, subnet (and vnet when owned)
        self._add_network_resources()

        # NIC and VM
        self._add_compute_resources()

        self._add_bootstrap_extension()

        self._add_outputs()

        return self.template

    def _add_parameters(self):
        """Add parameters to the template."""
        creds = self.config.get('credentials', {})

        if self.authentication_type == 'password':
            secret_description = "Admin password for the VM"
        else:
            secret_description = "SSH public key for the admin user"

        self.template["parameters"] = {
            "location": {
                "type": "string",
                "defaultValue": self.config.get('location', "[resourceGroup().location]"),
                "metadata": {
                    "description": "Location for all resources"
                }
            },
            "adminUsername": {
                "type": "string",
                "defaultValue": creds.get('admin_username', 'azureuser'),
                "metadata": {
                    "description": "Admin username for the VM"
                }
            },
            "adminPasswordOrKey": {
                "type": "securestring",
                "metadata": {
                    "description": secret_description
                }
            },
            "runnerRegistrationToken": {
                "type": "securestring",
                "metadata": {
                    "description": "Registration token for the self-hosted runner"
                }
            }
        }

    def _add_variables(self):
        """Add variables to the template."""
        script = BootstrapScriptBuilder(self.config).build()

        self.template["variables"] = {
            "bootstrapScript": script
        }

    def _add_network_resources(self):
        """Add network resources to the template."""
        resources = [self._create_nsg_resource()]

        # An owned vnet carries the subnet inline so redeploys don't drop it
        if self.creates_vnet:
            resources.append(self._create_vnet_resource())
        else:
            resources.append(self._create_subnet_resource())

        self.template["resources"].extend(resources)

    def _create_nsg_resource(self) -> Dict[str, Any]:
        """Create network security group resource."""
        nsg_config = self.config.get('network', {}).get('nsg', {})

        return {
            "type": "Microsoft.Network/networkSecurityGroups",
            "apiVersion": NETWORK_API_VERSION,
            "name": self.nsg_name,
            "location": "[parameters('location')]",
            "tags": self._get_tags(),
            "properties": {
                "securityRules": [
                    self._security_rule(rule) for rule in nsg_config.get('rules', [])
                ]
            }
        }

    def _security_rule(self, rule: Dict[str, Any]) -> Dict[str, Any]:
        properties = {
            "priority": rule.get('priority'),
            "direction": rule.get('direction'),
            "access": rule.get('access'),
            "protocol": rule.get('protocol'),
            "sourcePortRange": str(rule.get('source_port', '*')),
            "destinationPortRange": str(rule.get('destination_port', '*')),
            "sourceAddressPrefix": rule.get('source_address', '*'),
            "destinationAddressPrefix": rule.get('destination_address', '*')
        }
        if rule.get('description'):
            properties["description"] = rule['description']
        return {"name": rule.get('name'), "properties": properties}

    def _subnet_properties(self) -> Dict[str, Any]:
        subnet = self.config.get('network', {}).get('subnet', {})
        return {
            "addressPrefix": subnet.get('address_prefix'),
            "networkSecurityGroup": {
                "id": f"[resourceId('Microsoft.Network/networkSecurityGroups', '{self.nsg_name}')]"
            }
        }

    def _create_subnet_resource(self) -> Dict[str, Any]:
        """Create subnet resource as a child of an existing virtual network."""
        return {
            "type": "Microsoft.Network/virtualNetworks/subnets",
            "apiVersion": NETWORK_API_VERSION,
            "name": f"{self.vnet_name}/{self.subnet_name}",
            "dependsOn": [
                f"[resourceId('Microsoft.Network/networkSecurityGroups', '{self.nsg_name}')]"
            ],
            "properties": self._subnet_properties()
        }

    def _create_vnet_resource(self) -> Dict[str, Any]:
        """Create virtual network resource with the runner subnet inline."""
        network = self.config.get('network', {})

        return {
            "type": "Microsoft.Network/virtualNetworks",
            "apiVersion": NETWORK_API_VERSION,
            "name": self.vnet_name,
            "location": "[parameters('location')]",
            "tags": self._get_tags(),
            "dependsOn": [
                f"[resourceId('Microsoft.Network/networkSecurityGroups', '{self.nsg_name}')]"
            ],
            "properties": {
                "addressSpace": {
                    "addressPrefixes": [
                        network.get('address_space')
                    ]
                },
                "subnets": [
                    {
                        "name": self.subnet_name,
                        "properties": self._subnet_properties()
                    }
                ]
            }
        }

    def _subnet_id(self) -> str:
        return (
            "[resourceId('Microsoft.Network/virtualNetworks/subnets', "
            f"'{self.vnet_name}', '{self.subnet_name}')]"
        )

    def _add_compute_resources(self):
        """Add compute resources (NIC and VM) to the template."""
        self.template["resources"].append(self._create_nic_resource())
        self.template["resources"].append(self._create_vm_resource())

    def _create_nic_resource(self) -> Dict[str, Any]:
        """Create network interface resource."""
        private_ip = self.config.get('virtual_machine', {}).get('private_ip')

        if self.creates_vnet:
            parent = f"[resourceId('Microsoft.Network/virtualNetworks', '{self.vnet_name}')]"
        else:
            parent = self._subnet_id()

        ip_properties: Dict[str, Any] = {
            "privateIPAllocationMethod": "Static" if private_ip else "Dynamic",
            "subnet": {
                "id": self._subnet_id()
            }
        }
        if private_ip:
            ip_properties["privateIPAddress"] = private_ip

        return {
            "type": "Microsoft.Network/networkInterfaces",
            "apiVersion": NETWORK_API_VERSION,
            "name": self.nic_name,
            "location": "[parameters('location')]",
            "tags": self._get_tags(),
            "dependsOn": [parent],
            "properties": {
                "ipConfigurations": [
                    {
                        "name": "ipconfig1",
                        "properties": ip_properties
                    }
                ]
            }
        }

    def _build_os_profile(self) -> Dict[str, Any]:
        """
        Build the VM OS profile for the configured authentication mode.

        Exactly one of adminPassword and linuxConfiguration is emitted.

        Returns:
            osProfile dictionary
        """
        os_profile: Dict[str, Any] = {
            "computerName": self.vm_name,
            "adminUsername": "[parameters('adminUsername')]"
        }

        if self.authentication_type == 'password':
            os_profile["adminPassword"] = "[parameters('adminPasswordOrKey')]"
        else:
            os_profile["linuxConfiguration"] = {
                "disablePasswordAuthentication": True,
                "ssh": {
                    "publicKeys": [
                        {
                            "path": "[format('/home/{0}/.ssh/authorized_keys', parameters('adminUsername'))]",
                            "keyData": "[parameters('adminPasswordOrKey')]"
                        }
                    ]
                }
            }

        return os_profile

    def _create_vm_resource(self) -> Dict[str, Any]:
        """Create virtual machine resource."""
        vm = self.config.get('virtual_machine', {})
        image_ref = dict(DEFAULT_IMAGE)
        image_ref.update(vm.get('os', {}))

        os_disk_config = vm.get('os_disk', {})
        os_disk: Dict[str, Any] = {
            "createOption": "FromImage",
            "deleteOption": "Delete",
            "managedDisk": {
                "storageAccountType": os_disk_config.get('storage_account_type', 'StandardSSD_LRS')
            }
        }
        if os_disk_config.get('size_gb'):
            os_disk["diskSizeGB"] = os_disk_config['size_gb']

        vm_resource = {
            "type": "Microsoft.Compute/virtualMachines",
            "apiVersion": COMPUTE_API_VERSION,
            "name": self.vm_name,
            "location": "[parameters('location')]",
            "tags": self._get_tags(),
            "dependsOn": [
                f"[resourceId('Microsoft.Network/networkInterfaces', '{self.nic_name}')]"
            ],
            "properties": {
                "hardwareProfile": {
                    "vmSize": vm.get('size', 'Standard_B2s')
                },
                "osProfile": self._build_os_profile(),
                "storageProfile": {
                    "imageReference": image_ref,
                    "osDisk": os_disk
                },
                "networkProfile": {
                    "networkInterfaces": [
                        {
                            "id": f"[resourceId('Microsoft.Network/networkInterfaces', '{self.nic_name}')]"
                        }
                    ]
                },
                "diagnosticsProfile": {
                    "bootDiagnostics": {
                        "enabled": True
                    }
                }
            }
        }

        # SystemAssigned by default so the runner can `az login --identity`
        identity_type = vm.get('identity', {}).get('type', 'SystemAssigned')
        if identity_type and identity_type != 'None':
            vm_resource["identity"] = {"type": identity_type}

        return vm_resource

    def _add_bootstrap_extension(self):
        """Add the custom script extension that installs and registers the runner."""
        script_expression = (
            "[base64(replace(variables('bootstrapScript'), "
            f"'{TOKEN_PLACEHOLDER}', parameters('runnerRegistrationToken')))]"
        )

        extension = {
            "type": "Microsoft.Compute/virtualMachines/extensions",
            "apiVersion": COMPUTE_API_VERSION,
            "name": self.extension_name,
            "location": "[parameters('location')]",
            "tags": self._get_tags(),
            "dependsOn": [
                f"[resourceId('Microsoft.Compute/virtualMachines', '{self.vm_name}')]"
            ],
            "properties": {
                "publisher": "Microsoft.Azure.Extensions",
                "type": "CustomScript",
                "typeHandlerVersion": "2.1",
                "autoUpgradeMinorVersion": True,
                "settings": {},
                "protectedSettings": {
                    "script": script_expression
                }
            }
        }

        self.template["resources"].append(extension)

    def _add_outputs(self):
        """Add outputs to the template."""
        runner_name = BootstrapScriptBuilder(self.config).runner_name

        self.template["outputs"] = {
            "vmName": {
                "type": "string",
                "value": self.vm_name
            },
            "vmResourceId": {
                "type": "string",
                "value": f"[resourceId('Microsoft.Compute/virtualMachines', '{self.vm_name}')]"
            },
            "privateIPAddress": {
                "type": "string",
                "value": (
                    f"[reference(resourceId('Microsoft.Network/networkInterfaces', '{self.nic_name}'))"
                    ".ipConfigurations[0].properties.privateIPAddress]"
                )
            },
            "adminUsername": {
                "type": "string",
                "value": "[parameters('adminUsername')]"
            },
            "authenticationType": {
                "type": "string",
                "value": self.authentication_type
            },
            "runnerName": {
                "type": "string",
                "value": runner_name
            }
        }

    def external_references(self) -> List[Tuple[str, str]]:
        """
        Resources the template refers to without declaring them.

        Returns:
            List of (resource type, name) pairs
        """
        if self.creates_vnet:
            return []
        return [("Microsoft.Network/virtualNetworks", self.vnet_name)]

    def resource_ids(self) -> List[Tuple[str, str]]:
        """
        Declared resources in reverse dependency order (for teardown).

        Returns:
            List of (resource type, name) pairs, dependents first
        """
        ids = [
            ("Microsoft.Compute/virtualMachines/extensions", self.extension_name),
            ("Microsoft.Compute/virtualMachines", self.vm_name),
            ("Microsoft.Network/networkInterfaces", self.nic_name),
        ]
        if self.creates_vnet:
            ids.append(("Microsoft.Network/virtualNetworks", self.vnet_name))
        else:
            ids.append(("Microsoft.Network/virtualNetworks/subnets", f"{self.vnet_name}/{self.subnet_name}"))
        ids.append(("Microsoft.Network/networkSecurityGroups", self.nsg_name))
        return ids

    def save_template(self, output_path: str, fmt: str = 'json'):
        """
        Save the template to a file.

        Args:
            output_path: Path to save the template
            fmt: 'json' or 'yaml'
        """
        if not self.template["resources"]:
            self.build()

        with open(Path(output_path), 'w', encoding='utf-8') as f:
            if fmt == 'yaml':
                yaml.safe_dump(self.template, f, default_flow_style=False, sort_keys=False)
            else:
                json.dump(self.template, f, indent=2)
