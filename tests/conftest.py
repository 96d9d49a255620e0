"""Shared test fixtures and configuration for hybridlab tests."""

from typing import Any
from unittest import mock

import pytest

from hybridlab.cloud import AzureClient, Subscription
from hybridlab.config import Config
from hybridlab.powershell import PowerShellResult, PowerShellRunner


def ps_result(stdout: str = "", returncode: int = 0, stderr: str = "") -> PowerShellResult:
    """Build a PowerShellResult the way the runner returns it."""
    return PowerShellResult(stdout=stdout, stderr=stderr, returncode=returncode)


def respond(runner: mock.MagicMock, answers: dict) -> None:
    """Make runner.run answer by the first matching script fragment; everything else prints nothing."""
    def _run(script, check=True, timeout=None):
        for fragment, stdout in answers.items():
            if fragment in script:
                return ps_result(stdout)
        return ps_result()
    runner.run.side_effect = _run


def scripts_run(runner: mock.MagicMock) -> list:
    """Every script passed to runner.run / run_in_vm, in call order."""
    scripts = []
    for name, args, kwargs in runner.mock_calls:
        if name in ("run", "run_json"):
            scripts.append(args[0] if args else kwargs.get("script"))
        elif name in ("run_in_vm", "run_in_vm_json"):
            scripts.append(args[2] if len(args) > 2 else kwargs.get("script"))
    return scripts


@pytest.fixture
def mock_env(monkeypatch):
    """Pin Config to a known lab layout regardless of any local .env file."""
    values: dict[str, Any] = {
        "HYPERV_HOST": "",
        "LAB_PATH": r"C:\Lab",
        "DC_PARENT_VHDX": r"C:\Lab\Images\DC.vhdx",
        "NODE_PARENT_VHDX": r"C:\Lab\Images\Node.vhdx",
        "DC_ISO_PATH": "",
        "NODE_ISO_PATH": "",
        "SWITCH_NAME": "LabSwitch",
        "NAT_NAME": "LabNAT",
        "NAT_SUBNET": "10.0.0.0/24",
        "GATEWAY_IP": "",
        "DC_IP": "",
        "NODE_IP": "",
        "DC_VM_NAME": "Lab-DC",
        "DC_MEMORY_GB": 4,
        "DC_CPUS": 2,
        "NODE_VM_NAME": "Lab-Node",
        "NODE_MEMORY_GB": 32,
        "NODE_CPUS": 8,
        "NODE_NIC_COUNT": 2,
        "DOMAIN_NAME": "lab.local",
        "DOMAIN_NETBIOS": "LAB",
        "OU_NAME": "AzureLocal",
        "ADMIN_USER": "Administrator",
        "ADMIN_PASSWORD": "P@ssw0rd!",
        "LCM_USER": "lcmadmin",
        "LCM_PASSWORD": "Lcm@ssw0rd!",
        "AZURE_TENANT_ID": "tenant-1",
        "AZURE_SUBSCRIPTION_ID": "",
        "AZURE_CLIENT_ID": "",
        "AZURE_CLIENT_SECRET": "",
        "AZURE_ACCOUNT_ID": "admin@example.com",
        "AZURE_RESOURCE_GROUP": "lab-rg",
        "AZURE_REGION": "eastus",
        "CLUSTER_NAME": "lab-cluster",
        "CUSTOM_LOCATION_NAME": "lab-cl",
        "CLUSTER_IMAGE_PATH": r"C:\ClusterStorage\Images",
        "AZURE_LOGIN_RETRIES": 3,
        "AZURE_LOGIN_RETRY_DELAY": 0,
        "VM_BOOT_WAIT": 0,
        "VM_STOP_WAIT": 0,
        "DC_PROMOTION_WAIT": 0,
        "AD_READY_TIMEOUT": 0,
        "AD_READY_INTERVAL": 0,
        "ARC_REGISTRATION_WAIT": 0,
        "EXTENSION_WAIT": 0,
        "AKS_CLUSTER_NAME": "lab-aks",
        "AKS_NAMESPACE": "lab-admin",
        "AKS_SERVICE_ACCOUNT": "lab-admin",
        "AKS_CLUSTER_ROLE": "cluster-admin",
    }
    for key, value in values.items():
        monkeypatch.setattr(Config, key, value)
    monkeypatch.setenv("NODE_DATA_DISKS", "256,256")
    return values


@pytest.fixture
def mock_runner(mock_env):
    """PowerShellRunner double: every script succeeds with empty output."""
    runner = mock.MagicMock(spec=PowerShellRunner)
    runner.is_remote = False
    runner.run.return_value = ps_result()
    runner.run_in_vm.return_value = ps_result()
    runner.run_json.return_value = None
    return runner


@pytest.fixture
def mock_azure(mock_env):
    """AzureClient double with one selected, enabled subscription."""
    azure = mock.MagicMock(spec=AzureClient)
    azure.subscription_id = "sub-1"
    azure.login.return_value = "arm-token"
    azure.select_subscription.return_value = Subscription("sub-1", "Lab Subscription", "Enabled")
    azure.machine_id.side_effect = lambda rg, m: (
        f"/subscriptions/sub-1/resourceGroups/{rg}/providers/Microsoft.HybridCompute/machines/{m}"
    )
    azure.gallery_image_id.side_effect = lambda rg, i: (
        f"/subscriptions/sub-1/resourceGroups/{rg}/providers/Microsoft.AzureStackHCI/galleryImages/{i}"
    )
    azure.marketplace_gallery_image_id.side_effect = lambda rg, i: (
        f"/subscriptions/sub-1/resourceGroups/{rg}/providers/Microsoft.AzureStackHCI/marketplaceGalleryImages/{i}"
    )
    azure.cluster_id.side_effect = lambda rg, c: (
        f"/subscriptions/sub-1/resourceGroups/{rg}/providers/Microsoft.AzureStackHCI/clusters/{c}"
    )
    azure.custom_location_id.side_effect = lambda rg, n: (
        f"/subscriptions/sub-1/resourceGroups/{rg}/providers/Microsoft.ExtendedLocation/customLocations/{n}"
    )
    return azure


@pytest.fixture
def az_cli():
    """Resolve the Azure CLI to the path a Windows install puts it at."""
    path = r"C:\Program Files\Microsoft SDKs\Azure\CLI2\wbin\az.cmd"
    with mock.patch("hybridlab.cloud.shutil.which", return_value=path):
        yield path


@pytest.fixture(autouse=True)
def no_sleep():
    """Fixed waits and polls never actually sleep in tests."""
    with mock.patch("hybridlab.waits.time.sleep") as sleep, \
         mock.patch("hybridlab.waits._key_pressed", return_value=False):
        yield sleep
