#!/usr/bin/env python3
"""
src/hybridlab/cluster_node.py

Configure the HCI node guest and register it with Azure Arc:
1. Static management address with the DC as DNS
2. Time sync against the DC
3. Azure login, subscription, resource group, resource providers
4. Arc initialization inside the node
5. Verify the Arc machine and report its extensions
"""

import logging
from typing import Optional

from hybridlab.cloud import AzureClient
from hybridlab.config import Config
from hybridlab.domain_controller import configure_static_ip_script
from hybridlab.extensions import ExtensionManager
from hybridlab.infrastructure import computer_name_for
from hybridlab.powershell import GuestCredential, PowerShellRunner, quote
from hybridlab.waits import wait

logger = logging.getLogger(__name__)


class ClusterNodeConfigurator:
    """Prepares the HCI node and joins it to Arc."""

    def __init__(self, runner: Optional[PowerShellRunner] = None, azure: Optional[AzureClient] = None) -> None:
        self.runner = runner or PowerShellRunner()
        self._azure = azure
        self.vm_name = Config.NODE_VM_NAME
        self.cred = GuestCredential(Config.ADMIN_USER, Config.ADMIN_PASSWORD)

    @property
    def azure(self) -> AzureClient:
        if self._azure is None:
            self._azure = AzureClient()
        return self._azure

    @property
    def machine_name(self) -> str:
        # Arc registers the machine under its computer name
        return computer_name_for(self.vm_name)

    def configure_network(self) -> None:
        network = Config.network()
        print(f"🌐 Setting {self.vm_name} management address to {network.node_ip}/{network.prefix_length}")
        self.runner.run_in_vm(
            self.vm_name,
            self.cred,
            configure_static_ip_script(network.node_ip, network.prefix_length, network.gateway, network.dc_ip),
        )

    def configure_time(self) -> None:
        network = Config.network()
        self.runner.run_in_vm(
            self.vm_name,
            self.cred,
            f"""
            w32tm /config /manualpeerlist:{network.dc_ip} /syncfromflags:manual /update | Out-Null
            Restart-Service w32time
            w32tm /resync /force | Out-Null
            """,
            check=False,
        )

    def prepare_azure(self) -> str:
        """Log in and make sure the subscription is ready. Returns the ARM access token."""
        token = self.azure.login()
        sub = self.azure.select_subscription()
        print(f"☁️  Using subscription {sub.display_name} ({sub.subscription_id})")
        self.azure.ensure_resource_group(Config.AZURE_RESOURCE_GROUP, Config.AZURE_REGION)
        self.azure.register_providers()
        return token

    def is_arc_connected(self) -> bool:
        result = self.runner.run_in_vm(
            self.vm_name,
            self.cred,
            """
            $agent = "$env:ProgramFiles\\AzureConnectedMachineAgent\\azcmagent.exe"
            if (Test-Path $agent) { (& $agent show -j | ConvertFrom-Json).status } else { 'NotInstalled' }
            """,
            check=False,
        )
        return result.ok and result.stdout.strip().lower() == "connected"

    def register_with_arc(self, token: str) -> None:
        Config.require("AZURE_TENANT_ID", "AZURE_ACCOUNT_ID")
        print(f"🔗 Registering {self.vm_name} with Azure Arc in {Config.AZURE_RESOURCE_GROUP}")
        self.runner.run_in_vm(
            self.vm_name,
            self.cred,
            f"""
            Install-PackageProvider -Name NuGet -MinimumVersion 2.8.5.201 -Force | Out-Null
            Invoke-AzStackHciArcInitialization `
                -SubscriptionID {quote(self.azure.subscription_id)} `
                -ResourceGroup {quote(Config.AZURE_RESOURCE_GROUP)} `
                -TenantID {quote(Config.AZURE_TENANT_ID)} `
                -Region {quote(Config.AZURE_REGION)} `
                -Cloud 'AzureCloud' `
                -ArmAccessToken {quote(token)} `
                -AccountID {quote(Config.AZURE_ACCOUNT_ID)}
            """,
        )

    def verify_registration(self) -> None:
        """
        Raises:
            RuntimeError: If the Arc machine resource does not exist
        """
        machine = self.azure.get_machine(Config.AZURE_RESOURCE_GROUP, self.machine_name)
        if machine is None:
            raise RuntimeError(
                f"Arc machine {self.machine_name!r} not found in {Config.AZURE_RESOURCE_GROUP} after registration"
            )
        print(f"✅ Arc machine {self.machine_name!r} status: {getattr(machine, 'status', 'unknown')}")

        for ext in ExtensionManager(self.azure).status(self.machine_name):
            icon = "✅" if ext.succeeded else "⚠️ "
            print(f"   {icon} {ext.name}: {ext.state}")

    def configure(self) -> None:
        """Full node configuration and Arc registration, safe to re-run."""
        Config.require("ADMIN_PASSWORD")

        print("\n🌐 Step 1: Network")
        self.configure_network()

        print("\n🕒 Step 2: Time")
        self.configure_time()

        print("\n☁️  Step 3: Azure preparation")
        token = self.prepare_azure()

        print("\n🔗 Step 4: Arc registration")
        if self.is_arc_connected():
            print(f"✅ {self.vm_name} already connected to Arc, skipping.")
        else:
            self.register_with_arc(token)
            wait(Config.ARC_REGISTRATION_WAIT, "Waiting for Arc registration and extensions", allow_skip=True)

        print("\n🔍 Step 5: Verification")
        self.verify_registration()

        print(f"\n✅ Node {self.vm_name} configured and registered")
