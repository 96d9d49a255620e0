import ipaddress
import itertools
import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv


@dataclass
class DiskSpec:
    """A data disk attached to a VM."""

    name: str
    size_gb: int


@dataclass
class VMSpec:
    """Shape of a lab VM."""

    name: str
    memory_gb: int
    cpus: int
    parent_vhdx: str
    nic_count: int = 1
    data_disks: List[DiskSpec] = field(default_factory=list)
    nested_virtualization: bool = False
    mac_spoofing: bool = False
    tpm: bool = False


@dataclass
class NetworkSpec:
    """Internal switch + NAT layout shared by the lab VMs."""

    switch_name: str
    nat_name: str
    subnet: str
    prefix_length: int
    gateway: str
    dc_ip: str
    node_ip: str


class Config:
    """Loads and manages lab configuration from environment variables."""

    load_dotenv()

    # Hyper-V host transport; empty host means PowerShell runs locally
    HYPERV_HOST = os.getenv("HYPERV_HOST", "")
    HYPERV_SSH_USER = os.getenv("HYPERV_SSH_USER", "Administrator")
    HYPERV_SSH_KEY_PATH = os.getenv("HYPERV_SSH_KEY_PATH", "~/.ssh/id_rsa")
    POWERSHELL_TIMEOUT = int(os.getenv("POWERSHELL_TIMEOUT", "3600"))

    LAB_PATH = os.getenv("LAB_PATH", r"C:\HybridLab")

    DC_PARENT_VHDX = os.getenv("DC_PARENT_VHDX", r"C:\HybridLab\Images\WS2022.vhdx")
    NODE_PARENT_VHDX = os.getenv("NODE_PARENT_VHDX", r"C:\HybridLab\Images\AzureLocal.vhdx")
    DC_ISO_PATH = os.getenv("DC_ISO_PATH", "")
    NODE_ISO_PATH = os.getenv("NODE_ISO_PATH", "")
    DC_IMAGE_INDEX = int(os.getenv("DC_IMAGE_INDEX", "2"))
    NODE_IMAGE_INDEX = int(os.getenv("NODE_IMAGE_INDEX", "1"))
    OS_DISK_SIZE_GB = int(os.getenv("OS_DISK_SIZE_GB", "127"))

    SWITCH_NAME = os.getenv("SWITCH_NAME", "HybridLabSwitch")
    NAT_NAME = os.getenv("NAT_NAME", "HybridLabNAT")
    NAT_SUBNET = os.getenv("NAT_SUBNET", "192.168.0.0/24")
    GATEWAY_IP = os.getenv("GATEWAY_IP", "")
    DC_IP = os.getenv("DC_IP", "")
    NODE_IP = os.getenv("NODE_IP", "")
    DNS_FORWARDER = os.getenv("DNS_FORWARDER", "8.8.8.8")

    DC_VM_NAME = os.getenv("DC_VM_NAME", "HybridLab-DC")
    DC_MEMORY_GB = int(os.getenv("DC_MEMORY_GB", "4"))
    DC_CPUS = int(os.getenv("DC_CPUS", "2"))
    NODE_VM_NAME = os.getenv("NODE_VM_NAME", "HybridLab-Node")
    NODE_MEMORY_GB = int(os.getenv("NODE_MEMORY_GB", "32"))
    NODE_CPUS = int(os.getenv("NODE_CPUS", "8"))
    NODE_NIC_COUNT = int(os.getenv("NODE_NIC_COUNT", "2"))

    DOMAIN_NAME = os.getenv("DOMAIN_NAME", "hybridlab.local")
    DOMAIN_NETBIOS = os.getenv("DOMAIN_NETBIOS", "HYBRIDLAB")
    OU_NAME = os.getenv("OU_NAME", "AzureLocal")
    ADMIN_USER = os.getenv("ADMIN_USER", "Administrator")
    ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "")
    LCM_USER = os.getenv("LCM_USER", "lcmadmin")
    LCM_PASSWORD = os.getenv("LCM_PASSWORD", "") or ADMIN_PASSWORD
    TIMEZONE = os.getenv("TIMEZONE", "UTC")

    AZURE_TENANT_ID = os.getenv("AZURE_TENANT_ID", "")
    AZURE_SUBSCRIPTION_ID = os.getenv("AZURE_SUBSCRIPTION_ID", "")
    AZURE_CLIENT_ID = os.getenv("AZURE_CLIENT_ID", "")
    AZURE_CLIENT_SECRET = os.getenv("AZURE_CLIENT_SECRET", "")
    AZURE_ACCOUNT_ID = os.getenv("AZURE_ACCOUNT_ID", "")
    AZURE_RESOURCE_GROUP = os.getenv("AZURE_RESOURCE_GROUP", "hybridlab-rg")
    AZURE_REGION = os.getenv("AZURE_REGION", "eastus")
    CLUSTER_NAME = os.getenv("CLUSTER_NAME", "hybridlab-cluster")
    CUSTOM_LOCATION_NAME = os.getenv("CUSTOM_LOCATION_NAME", "hybridlab-cl")
    CLUSTER_IMAGE_PATH = os.getenv("CLUSTER_IMAGE_PATH", r"C:\ClusterStorage\UserStorage_1\Images")
    AZURE_LOGIN_RETRIES = int(os.getenv("AZURE_LOGIN_RETRIES", "3"))
    AZURE_LOGIN_RETRY_DELAY = int(os.getenv("AZURE_LOGIN_RETRY_DELAY", "10"))

    # Fixed waits, in seconds
    VM_BOOT_WAIT = int(os.getenv("VM_BOOT_WAIT", "120"))
    VM_STOP_WAIT = int(os.getenv("VM_STOP_WAIT", "60"))
    DC_PROMOTION_WAIT = int(os.getenv("DC_PROMOTION_WAIT", "300"))
    AD_READY_TIMEOUT = int(os.getenv("AD_READY_TIMEOUT", "900"))
    AD_READY_INTERVAL = int(os.getenv("AD_READY_INTERVAL", "30"))
    ARC_REGISTRATION_WAIT = int(os.getenv("ARC_REGISTRATION_WAIT", "600"))
    EXTENSION_WAIT = int(os.getenv("EXTENSION_WAIT", "900"))

    AKS_CLUSTER_NAME = os.getenv("AKS_CLUSTER_NAME", "hybridlab-aks")
    AKS_NAMESPACE = os.getenv("AKS_NAMESPACE", "hybridlab-admin")
    AKS_SERVICE_ACCOUNT = os.getenv("AKS_SERVICE_ACCOUNT", "hybridlab-admin")
    AKS_CLUSTER_ROLE = os.getenv("AKS_CLUSTER_ROLE", "cluster-admin")
    KUBECONFIG_PATH = os.getenv("KUBECONFIG_PATH", "~/.kube/hybridlab-aks")

    @classmethod
    def vm_path(cls) -> str:
        return cls.LAB_PATH.rstrip("\\") + r"\VMs"

    @classmethod
    def vhd_path(cls) -> str:
        return cls.LAB_PATH.rstrip("\\") + r"\Disks"

    @classmethod
    def download_path(cls) -> str:
        return cls.LAB_PATH.rstrip("\\") + r"\Downloads"

    @staticmethod
    def get_data_disks() -> List[DiskSpec]:
        """
        Reads NODE_DATA_DISKS from the environment, splits by comma,
        and returns one DiskSpec per size (e.g. "256,256" -> two 256GB disks).
        """
        raw = os.getenv("NODE_DATA_DISKS", "256,256")
        disks = []
        for entry in (s.strip() for s in raw.split(",")):
            if not entry:
                continue
            try:
                size = int(entry)
            except ValueError:
                raise ValueError(f"NODE_DATA_DISKS entry {entry!r} is not a number")
            if size <= 0:
                raise ValueError(f"NODE_DATA_DISKS entry {entry!r} must be positive")
            disks.append(DiskSpec(name=f"Data{len(disks) + 1:02d}", size_gb=size))
        return disks

    @classmethod
    def get_dc_spec(cls) -> VMSpec:
        return VMSpec(
            name=cls.DC_VM_NAME,
            memory_gb=cls.DC_MEMORY_GB,
            cpus=cls.DC_CPUS,
            parent_vhdx=cls.DC_PARENT_VHDX,
        )

    @classmethod
    def get_node_spec(cls) -> VMSpec:
        return VMSpec(
            name=cls.NODE_VM_NAME,
            memory_gb=cls.NODE_MEMORY_GB,
            cpus=cls.NODE_CPUS,
            parent_vhdx=cls.NODE_PARENT_VHDX,
            nic_count=cls.NODE_NIC_COUNT,
            data_disks=cls.get_data_disks(),
            nested_virtualization=True,
            mac_spoofing=True,
            tpm=True,
        )

    @classmethod
    def network(cls) -> NetworkSpec:
        """Derive gateway/DC/node addresses from NAT_SUBNET unless set explicitly."""
        subnet = ipaddress.ip_network(cls.NAT_SUBNET, strict=False)
        defaults = [str(host) for host in itertools.islice(subnet.hosts(), 3)]
        if len(defaults) < 3:
            raise ValueError(f"NAT_SUBNET {subnet} is too small for gateway, DC and node")

        addresses = []
        for explicit, default in zip((cls.GATEWAY_IP, cls.DC_IP, cls.NODE_IP), defaults):
            address = explicit or default
            if ipaddress.ip_address(address) not in subnet:
                raise ValueError(f"Address {address} is outside {subnet}")
            addresses.append(address)

        gateway, dc_ip, node_ip = addresses
        return NetworkSpec(
            switch_name=cls.SWITCH_NAME,
            nat_name=cls.NAT_NAME,
            subnet=str(subnet),
            prefix_length=subnet.prefixlen,
            gateway=gateway,
            dc_ip=dc_ip,
            node_ip=node_ip,
        )

    @classmethod
    def require(cls, *names: str) -> None:
        """Raise ValueError listing every named setting that is empty."""
        missing = [name for name in names if not getattr(cls, name, None)]
        if missing:
            raise ValueError(f"Missing required settings: {', '.join(missing)}")

    @classmethod
    def subscription_or_none(cls) -> Optional[str]:
        return cls.AZURE_SUBSCRIPTION_ID or None
