#!/usr/bin/env python3
"""
src/hybridlab/hyperv.py

Hyper-V host operations for the lab: capability checks, internal switch and
NAT, VHDX preparation, VM create/start/stop/remove.

Every create operation checks for the resource first and is safe to re-run.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from hybridlab.config import NetworkSpec, VMSpec
from hybridlab.powershell import PowerShellRunner, quote

logger = logging.getLogger(__name__)

GB = 1024**3


@dataclass
class HostCapabilities:
    """What the Hyper-V host offers."""

    hyperv_enabled: bool
    virtualization_firmware_enabled: bool
    free_memory_gb: float
    logical_processors: int


class HyperVManager:
    """Wraps the Hyper-V cmdlets used to build and tear down the lab."""

    def __init__(self, runner: PowerShellRunner) -> None:
        self.runner = runner

    # --- host ---

    def check_host(self, required_memory_gb: int) -> HostCapabilities:
        """
        Verify Hyper-V is usable and there is enough free memory for the lab.

        Raises:
            RuntimeError: If Hyper-V is missing or memory is insufficient
        """
        info = self.runner.run_json(
            """
            $os = Get-CimInstance Win32_OperatingSystem
            $cs = Get-CimInstance Win32_ComputerSystem
            $hv = Get-Command -Name Get-VM -Module Hyper-V -ErrorAction SilentlyContinue
            [pscustomobject]@{
                HyperV = [bool]$hv
                HypervisorPresent = [bool]$cs.HypervisorPresent
                FreeMemoryKB = [int64]$os.FreePhysicalMemory
                LogicalProcessors = [int]$cs.NumberOfLogicalProcessors
            }
            """
        )
        caps = HostCapabilities(
            hyperv_enabled=bool(info["HyperV"]),
            virtualization_firmware_enabled=bool(info["HypervisorPresent"]),
            free_memory_gb=round(int(info["FreeMemoryKB"]) / (1024 * 1024), 1),
            logical_processors=int(info["LogicalProcessors"]),
        )

        if not caps.hyperv_enabled:
            raise RuntimeError("Hyper-V PowerShell module not found - enable the Hyper-V role and reboot")
        if not caps.virtualization_firmware_enabled:
            raise RuntimeError("Hypervisor is not running - enable virtualization in firmware")
        if caps.free_memory_gb < required_memory_gb:
            raise RuntimeError(
                f"Insufficient memory: {caps.free_memory_gb}GB free, {required_memory_gb}GB required"
            )

        logger.info(
            f"Host OK: {caps.logical_processors} logical processors, {caps.free_memory_gb}GB free memory"
        )
        return caps

    def ensure_folder(self, path: str) -> None:
        self.runner.run(
            f"if (-not (Test-Path {quote(path)})) {{ New-Item -ItemType Directory -Path {quote(path)} -Force | Out-Null }}"
        )

    def path_exists(self, path: str) -> bool:
        result = self.runner.run(f"Test-Path {quote(path)}")
        return result.stdout.strip().lower() == "true"

    def remove_folder(self, path: str) -> bool:
        if not self.path_exists(path):
            return False
        self.runner.run(f"Remove-Item -Path {quote(path)} -Recurse -Force")
        return True

    # --- network ---

    def switch_exists(self, name: str) -> bool:
        result = self.runner.run(
            f"[bool](Get-VMSwitch -Name {quote(name)} -ErrorAction SilentlyContinue)"
        )
        return result.stdout.strip().lower() == "true"

    def ensure_switch(self, network: NetworkSpec) -> bool:
        """Create the internal switch and give the host vNIC the gateway address.

        Returns:
            True if the switch was created, False if it already existed
        """
        created = False
        if not self.switch_exists(network.switch_name):
            print(f"🔌 Creating internal switch {network.switch_name!r}")
            self.runner.run(f"New-VMSwitch -Name {quote(network.switch_name)} -SwitchType Internal | Out-Null")
            created = True
        else:
            print(f"✅ Switch {network.switch_name!r} already exists")

        alias = f"vEthernet ({network.switch_name})"
        self.runner.run(
            f"""
            $existing = Get-NetIPAddress -InterfaceAlias {quote(alias)} -AddressFamily IPv4 -ErrorAction SilentlyContinue |
                Where-Object {{ $_.IPAddress -eq {quote(network.gateway)} }}
            if (-not $existing) {{
                New-NetIPAddress -InterfaceAlias {quote(alias)} -IPAddress {quote(network.gateway)} -PrefixLength {network.prefix_length} | Out-Null
            }}
            """
        )
        return created

    def ensure_nat(self, network: NetworkSpec) -> bool:
        exists = self.runner.run(f"[bool](Get-NetNat -Name {quote(network.nat_name)} -ErrorAction SilentlyContinue)")
        if exists.stdout.strip().lower() == "true":
            print(f"✅ NAT {network.nat_name!r} already exists")
            return False

        print(f"🌐 Creating NAT {network.nat_name!r} for {network.subnet}")
        self.runner.run(
            f"New-NetNat -Name {quote(network.nat_name)} -InternalIPInterfaceAddressPrefix {quote(network.subnet)} | Out-Null"
        )
        return True

    def remove_switch(self, name: str) -> bool:
        if not self.switch_exists(name):
            return False
        self.runner.run(f"Remove-VMSwitch -Name {quote(name)} -Force")
        return True

    def remove_nat(self, name: str) -> bool:
        exists = self.runner.run(f"[bool](Get-NetNat -Name {quote(name)} -ErrorAction SilentlyContinue)")
        if exists.stdout.strip().lower() != "true":
            return False
        self.runner.run(f"Remove-NetNat -Name {quote(name)} -Confirm:$false")
        return True

    # --- disks ---

    def build_vhdx_from_iso(self, iso_path: str, vhdx_path: str, image_index: int, size_gb: int) -> None:
        """Apply a Windows image from an ISO onto a new bootable GPT VHDX."""
        print(f"💿 Building {vhdx_path} from {iso_path} (image index {image_index})")
        self.runner.run(
            f"""
            $iso = Mount-DiskImage -ImagePath {quote(iso_path)} -PassThru
            try {{
                $isoLetter = ($iso | Get-Volume).DriveLetter
                $wim = "$($isoLetter):\\sources\\install.wim"
                New-VHD -Path {quote(vhdx_path)} -SizeBytes {size_gb * GB} -Dynamic | Out-Null
                $disk = Mount-VHD -Path {quote(vhdx_path)} -Passthru | Get-Disk
                try {{
                    Initialize-Disk -Number $disk.Number -PartitionStyle GPT
                    $esp = New-Partition -DiskNumber $disk.Number -Size 260MB -GptType '{{c12a7328-f81f-11d2-ba4b-00a0c93ec93b}}'
                    $esp | Format-Volume -FileSystem FAT32 -Force -Confirm:$false | Out-Null
                    $esp | Add-PartitionAccessPath -AssignDriveLetter
                    New-Partition -DiskNumber $disk.Number -Size 16MB -GptType '{{e3c9e316-0b5c-4db8-817d-f92df00215ae}}' | Out-Null
                    $os = New-Partition -DiskNumber $disk.Number -UseMaximumSize -AssignDriveLetter
                    $os | Format-Volume -FileSystem NTFS -Force -Confirm:$false | Out-Null
                    $osLetter = (Get-Partition -DiskNumber $disk.Number -PartitionNumber $os.PartitionNumber).DriveLetter
                    $espLetter = (Get-Partition -DiskNumber $disk.Number -PartitionNumber $esp.PartitionNumber).DriveLetter
                    Expand-WindowsImage -ImagePath $wim -Index {image_index} -ApplyPath "$($osLetter):\\" | Out-Null
                    & bcdboot "$($osLetter):\\Windows" /s "$($espLetter):" /f UEFI | Out-Null
                }} finally {{
                    Dismount-VHD -Path {quote(vhdx_path)}
                }}
            }} finally {{
                Dismount-DiskImage -ImagePath {quote(iso_path)} | Out-Null
            }}
            """
        )

    def inject_unattend(self, vhdx_path: str, unattend_xml: str) -> None:
        """Write unattend.xml into the Panther folder of an offline VHDX."""
        self.runner.run(
            f"""
            $disk = Mount-VHD -Path {quote(vhdx_path)} -Passthru | Get-Disk
            try {{
                $letter = (Get-Partition -DiskNumber $disk.Number | Where-Object {{ $_.DriveLetter }} |
                    Sort-Object Size -Descending | Select-Object -First 1).DriveLetter
                $panther = "$($letter):\\Windows\\Panther"
                New-Item -ItemType Directory -Path $panther -Force | Out-Null
                Set-Content -Path "$panther\\unattend.xml" -Value {quote(unattend_xml)} -Encoding UTF8
            }} finally {{
                Dismount-VHD -Path {quote(vhdx_path)}
            }}
            """
        )

    def convert_vhd(self, source: str, destination: str) -> None:
        """Convert a VHD to a dynamic VHDX (skipped if the destination exists)."""
        if self.path_exists(destination):
            print(f"✅ {destination} already exists. Skipping conversion.")
            return
        print(f"🔄 Converting {source} → {destination}")
        self.runner.run(f"Convert-VHD -Path {quote(source)} -DestinationPath {quote(destination)} -VHDType Dynamic")

    # --- VMs ---

    @staticmethod
    def os_disk_path(vm_name: str, vhd_path: str) -> str:
        return f"{vhd_path}\\{vm_name}\\{vm_name}-OS.vhdx"

    def vm_exists(self, name: str) -> bool:
        result = self.runner.run(f"[bool](Get-VM -Name {quote(name)} -ErrorAction SilentlyContinue)")
        return result.stdout.strip().lower() == "true"

    def get_vm_state(self, name: str) -> Optional[str]:
        """Return the VM state (Running, Off, ...) or None if the VM does not exist."""
        result = self.runner.run(
            f"$vm = Get-VM -Name {quote(name)} -ErrorAction SilentlyContinue; if ($vm) {{ $vm.State.ToString() }}"
        )
        return result.stdout.strip() or None

    def list_vms(self, names: List[str]) -> Dict[str, Optional[str]]:
        return {name: self.get_vm_state(name) for name in names}

    def create_vm(self, spec: VMSpec, switch_name: str, vm_path: str, vhd_path: str) -> bool:
        """
        Create a Gen2 VM with a differencing OS disk on spec.parent_vhdx.

        Returns:
            True if the VM was created, False if it already existed
        """
        if self.vm_exists(spec.name):
            print(f"✅ VM {spec.name!r} already exists, skipping.")
            return False

        vm_disk_dir = f"{vhd_path}\\{spec.name}"
        os_disk = self.os_disk_path(spec.name, vhd_path)
        print(f"🆕 Creating VM {spec.name!r}: {spec.cpus} CPUs, {spec.memory_gb}GB RAM")

        self.ensure_folder(vm_disk_dir)
        self.runner.run(
            f"""
            if (-not (Test-Path {quote(os_disk)})) {{
                New-VHD -Path {quote(os_disk)} -ParentPath {quote(spec.parent_vhdx)} -Differencing | Out-Null
            }}
            New-VM -Name {quote(spec.name)} -Generation 2 -MemoryStartupBytes {spec.memory_gb * GB} `
                -VHDPath {quote(os_disk)} -SwitchName {quote(switch_name)} -Path {quote(vm_path)} | Out-Null
            Set-VM -Name {quote(spec.name)} -ProcessorCount {spec.cpus} -StaticMemory `
                -CheckpointType Disabled -AutomaticStartAction Nothing -AutomaticStopAction ShutDown
            """
        )

        for index in range(1, spec.nic_count):
            self.runner.run(
                f"Add-VMNetworkAdapter -VMName {quote(spec.name)} -SwitchName {quote(switch_name)} -Name 'NIC{index + 1}'"
            )

        if spec.mac_spoofing:
            self.runner.run(f"Get-VMNetworkAdapter -VMName {quote(spec.name)} | Set-VMNetworkAdapter -MacAddressSpoofing On")

        if spec.nested_virtualization:
            self.runner.run(f"Set-VMProcessor -VMName {quote(spec.name)} -ExposeVirtualizationExtensions $true")

        if spec.tpm:
            self.runner.run(
                f"""
                Set-VMKeyProtector -VMName {quote(spec.name)} -NewLocalKeyProtector
                Enable-VMTPM -VMName {quote(spec.name)}
                """
            )

        for disk in spec.data_disks:
            disk_path = f"{vm_disk_dir}\\{spec.name}-{disk.name}.vhdx"
            self.runner.run(
                f"""
                if (-not (Test-Path {quote(disk_path)})) {{
                    New-VHD -Path {quote(disk_path)} -SizeBytes {disk.size_gb * GB} -Dynamic | Out-Null
                }}
                Add-VMHardDiskDrive -VMName {quote(spec.name)} -ControllerType SCSI -Path {quote(disk_path)}
                """
            )

        logger.info(f"Created VM {spec.name} with {len(spec.data_disks)} data disk(s)")
        return True

    def start_vm(self, name: str) -> bool:
        """Start a VM unless it is already running. Returns True if started."""
        state = self.get_vm_state(name)
        if state is None:
            raise RuntimeError(f"VM {name!r} does not exist")
        if state == "Running":
            print(f"✅ VM {name!r} already running")
            return False
        print(f"▶️  Starting VM {name!r}")
        self.runner.run(f"Start-VM -Name {quote(name)}")
        return True

    def stop_vm(self, name: str, force: bool = False) -> bool:
        """Shut a VM down (or turn it off when force is set). Returns True if stopped."""
        state = self.get_vm_state(name)
        if state is None:
            raise RuntimeError(f"VM {name!r} does not exist")
        if state == "Off":
            print(f"✅ VM {name!r} already off")
            return False
        print(f"⏹️  Stopping VM {name!r}")
        flag = "-TurnOff" if force else "-Force"
        self.runner.run(f"Stop-VM -Name {quote(name)} {flag}")
        return True

    def remove_vm(self, name: str, vhd_path: str) -> bool:
        """Turn off and delete a VM and its disk folder. Returns False if absent."""
        if not self.vm_exists(name):
            return False
        disk_dir = f"{vhd_path}\\{name}"
        print(f"🗑️  Removing VM {name!r}")
        self.runner.run(
            f"""
            $vm = Get-VM -Name {quote(name)}
            if ($vm.State -ne 'Off') {{ Stop-VM -VM $vm -TurnOff -Force }}
            Remove-VM -VM $vm -Force
            $disks = {quote(disk_dir)}
            if (Test-Path $disks) {{ Remove-Item -Path $disks -Recurse -Force }}
            """
        )
        return True
