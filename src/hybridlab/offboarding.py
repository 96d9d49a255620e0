#!/usr/bin/env python3
"""
src/hybridlab/offboarding.py

Tear the lab down: Azure resources first (cluster, Arc machine, optionally
the resource group), then the Hyper-V side (VMs, NAT, switch, lab folder).

A resource that is already gone is reported as a warning; any other failure
stops the run.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from hybridlab.cloud import AZURE_STACK_HCI_API, AzureClient
from hybridlab.config import Config
from hybridlab.hyperv import HyperVManager
from hybridlab.infrastructure import computer_name_for
from hybridlab.powershell import PowerShellRunner

logger = logging.getLogger(__name__)


@dataclass
class OffboardReport:
    removed: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)

    def record(self, what: str, removed: bool) -> None:
        if removed:
            print(f"🗑️  Removed {what}")
            self.removed.append(what)
        else:
            print(f"⚠️  {what} not found, skipping")
            logger.warning(f"{what} not found during offboarding")
            self.missing.append(what)


class Offboarder:
    """Removes everything the other steps created."""

    def __init__(self, runner: Optional[PowerShellRunner] = None, azure: Optional[AzureClient] = None) -> None:
        self.hyperv = HyperVManager(runner or PowerShellRunner())
        self._azure = azure

    @property
    def azure(self) -> AzureClient:
        if self._azure is None:
            self._azure = AzureClient()
        return self._azure

    def offboard_azure(self, report: OffboardReport, delete_resource_group: bool = False) -> None:
        rg = Config.AZURE_RESOURCE_GROUP
        self.azure.login()
        self.azure.select_subscription()

        cluster_id = self.azure.cluster_id(rg, Config.CLUSTER_NAME)
        report.record(f"cluster {Config.CLUSTER_NAME}", self.azure.delete_resource(cluster_id, AZURE_STACK_HCI_API))

        machine = computer_name_for(Config.NODE_VM_NAME)
        report.record(f"Arc machine {machine}", self.azure.delete_machine(rg, machine))

        if delete_resource_group:
            report.record(f"resource group {rg}", self.azure.delete_resource_group(rg))

    def offboard_hyperv(self, report: OffboardReport, keep_images: bool = False) -> None:
        """Remove VMs, NAT, switch and the lab folder. keep_images leaves LAB_PATH and its parent images."""
        for name in (Config.NODE_VM_NAME, Config.DC_VM_NAME):
            report.record(f"VM {name}", self.hyperv.remove_vm(name, Config.vhd_path()))

        report.record(f"NAT {Config.NAT_NAME}", self.hyperv.remove_nat(Config.NAT_NAME))
        report.record(f"switch {Config.SWITCH_NAME}", self.hyperv.remove_switch(Config.SWITCH_NAME))
        if keep_images:
            folders = [Config.vm_path(), Config.vhd_path(), Config.download_path()]
        else:
            folders = [Config.LAB_PATH]
        for path in folders:
            report.record(f"folder {path}", self.hyperv.remove_folder(path))

    def offboard(
        self, remove_azure: bool = True, delete_resource_group: bool = False, keep_images: bool = False
    ) -> OffboardReport:
        report = OffboardReport()
        if remove_azure:
            print("\n☁️  Step 1: Azure resources")
            self.offboard_azure(report, delete_resource_group=delete_resource_group)
        else:
            print("\n☁️  Step 1: Azure resources (skipped)")

        print("\n🖥️  Step 2: Hyper-V resources")
        self.offboard_hyperv(report, keep_images=keep_images)

        print(f"\n✅ Offboarding complete: {len(report.removed)} removed, {len(report.missing)} already gone")
        return report
