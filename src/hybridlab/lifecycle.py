"""Day-2 start/stop of the lab VMs in dependency order."""

import logging
from typing import List, Optional, Tuple

from hybridlab.config import Config
from hybridlab.hyperv import HyperVManager
from hybridlab.powershell import PowerShellRunner
from hybridlab.waits import wait

logger = logging.getLogger(__name__)


class LabLifecycle:
    """Starts the DC before the node and stops them in reverse."""

    def __init__(self, runner: Optional[PowerShellRunner] = None) -> None:
        self.hyperv = HyperVManager(runner or PowerShellRunner())

    def start_lab(self) -> None:
        dc, node = Config.DC_VM_NAME, Config.NODE_VM_NAME
        if self.hyperv.start_vm(dc):
            wait(Config.VM_BOOT_WAIT, f"Waiting for {dc} to boot before starting {node}", allow_skip=True)
        self.hyperv.start_vm(node)
        print("✅ Lab started")

    def stop_lab(self, force: bool = False) -> None:
        dc, node = Config.DC_VM_NAME, Config.NODE_VM_NAME
        if self.hyperv.stop_vm(node, force=force):
            wait(Config.VM_STOP_WAIT, f"Waiting for {node} to shut down before stopping {dc}", allow_skip=True)
        self.hyperv.stop_vm(dc, force=force)
        print("✅ Lab stopped")

    def lab_status(self) -> List[Tuple[str, str]]:
        states = self.hyperv.list_vms([Config.DC_VM_NAME, Config.NODE_VM_NAME])
        return [(name, state or "Missing") for name, state in states.items()]
