#!/usr/bin/env python3
"""
src/hybridlab/infrastructure.py

Provision the lab fabric on the Hyper-V host: folders, internal switch, NAT,
base images and the two VMs (domain controller and HCI node).
"""

import base64
import logging
import textwrap
from typing import Optional

from hybridlab.config import Config, VMSpec
from hybridlab.hyperv import HyperVManager
from hybridlab.powershell import PowerShellRunner
from hybridlab.waits import wait

logger = logging.getLogger(__name__)


def _encode_unattend_password(password: str, suffix: str) -> str:
    return base64.b64encode((password + suffix).encode("utf-16-le")).decode("ascii")


def render_unattend(computer_name: str, admin_password: str, timezone: str) -> str:
    """Build the unattend.xml that names the guest and sets the admin password."""
    admin_value = _encode_unattend_password(admin_password, "AdministratorPassword")
    return textwrap.dedent(
        f"""\
        <?xml version="1.0" encoding="utf-8"?>
        <unattend xmlns="urn:schemas-microsoft-com:unattend">
          <settings pass="specialize">
            <component name="Microsoft-Windows-Shell-Setup" processorArchitecture="amd64" publicKeyToken="31bf3856ad364e35" language="neutral" versionScope="nonSxS">
              <ComputerName>{computer_name}</ComputerName>
              <TimeZone>{timezone}</TimeZone>
            </component>
            <component name="Microsoft-Windows-TerminalServices-LocalSessionManager" processorArchitecture="amd64" publicKeyToken="31bf3856ad364e35" language="neutral" versionScope="nonSxS">
              <fDenyTSConnections>false</fDenyTSConnections>
            </component>
          </settings>
          <settings pass="oobeSystem">
            <component name="Microsoft-Windows-Shell-Setup" processorArchitecture="amd64" publicKeyToken="31bf3856ad364e35" language="neutral" versionScope="nonSxS">
              <UserAccounts>
                <AdministratorPassword>
                  <Value>{admin_value}</Value>
                  <PlainText>false</PlainText>
                </AdministratorPassword>
              </UserAccounts>
              <OOBE>
                <HideEULAPage>true</HideEULAPage>
                <HideLocalAccountScreen>true</HideLocalAccountScreen>
                <HideOnlineAccountScreens>true</HideOnlineAccountScreens>
                <HideWirelessSetupInOOBE>true</HideWirelessSetupInOOBE>
                <ProtectYourPC>3</ProtectYourPC>
                <SkipMachineOOBE>true</SkipMachineOOBE>
              </OOBE>
            </component>
          </settings>
        </unattend>
        """
    )


def computer_name_for(vm_name: str) -> str:
    """NetBIOS computer names are limited to 15 characters."""
    return vm_name.replace("_", "-")[:15]


class InfrastructureProvisioner:
    """Builds the switch, NAT and VMs for the lab."""

    def __init__(self, runner: Optional[PowerShellRunner] = None) -> None:
        self.runner = runner or PowerShellRunner()
        self.hyperv = HyperVManager(self.runner)

    def ensure_base_image(self, spec: VMSpec, iso_path: str, image_index: int) -> None:
        """Make sure the parent VHDX exists, building it from the ISO if one is configured."""
        if self.hyperv.path_exists(spec.parent_vhdx):
            print(f"✅ Base image {spec.parent_vhdx} present")
            return
        if not iso_path:
            raise RuntimeError(
                f"Base image {spec.parent_vhdx} for {spec.name} not found and no ISO configured"
            )
        if not self.hyperv.path_exists(iso_path):
            raise RuntimeError(f"ISO {iso_path} not found")

        self.hyperv.ensure_folder(spec.parent_vhdx.rsplit("\\", 1)[0])
        self.hyperv.build_vhdx_from_iso(iso_path, spec.parent_vhdx, image_index, Config.OS_DISK_SIZE_GB)

    def create_lab_vm(self, spec: VMSpec, switch_name: str) -> bool:
        """Create the VM and seed its OS disk with unattend.xml. Returns True if created."""
        created = self.hyperv.create_vm(spec, switch_name, Config.vm_path(), Config.vhd_path())
        if created:
            xml = render_unattend(computer_name_for(spec.name), Config.ADMIN_PASSWORD, Config.TIMEZONE)
            self.hyperv.inject_unattend(HyperVManager.os_disk_path(spec.name, Config.vhd_path()), xml)
        return created

    def provision(self) -> None:
        """Idempotently build the whole lab fabric and boot both VMs."""
        Config.require("ADMIN_PASSWORD")
        network = Config.network()
        dc = Config.get_dc_spec()
        node = Config.get_node_spec()

        print("\n🔍 Step 1: Host capability check")
        # running VMs already hold their memory
        required = sum(
            spec.memory_gb for spec in (dc, node) if self.hyperv.get_vm_state(spec.name) != "Running"
        )
        self.hyperv.check_host(required)

        print("\n📁 Step 2: Lab folders")
        for path in (Config.LAB_PATH, Config.vm_path(), Config.vhd_path(), Config.download_path()):
            self.hyperv.ensure_folder(path)

        print("\n🔌 Step 3: Network")
        self.hyperv.ensure_switch(network)
        self.hyperv.ensure_nat(network)

        print("\n💿 Step 4: Base images")
        self.ensure_base_image(dc, Config.DC_ISO_PATH, Config.DC_IMAGE_INDEX)
        self.ensure_base_image(node, Config.NODE_ISO_PATH, Config.NODE_IMAGE_INDEX)

        print("\n🖥️  Step 5: Virtual machines")
        created = [spec.name for spec in (dc, node) if self.create_lab_vm(spec, network.switch_name)]

        print("\n▶️  Step 6: Boot")
        started = [spec.name for spec in (dc, node) if self.hyperv.start_vm(spec.name)]

        if created or started:
            wait(Config.VM_BOOT_WAIT, "Waiting for guests to finish setup", allow_skip=True)

        logger.info(f"Provisioning done: created={created} started={started}")
        print(f"\n✅ Lab fabric ready: DC {network.dc_ip}, node {network.node_ip}, gateway {network.gateway}")
