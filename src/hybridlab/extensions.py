"""Arc machine extension status and repair for the HCI node."""

import logging
from dataclasses import dataclass
from typing import Any, List, NamedTuple, Optional

from hybridlab.cloud import AzureClient
from hybridlab.config import Config
from hybridlab.waits import wait

logger = logging.getLogger(__name__)


class ExtensionSpec(NamedTuple):
    name: str
    publisher: str
    type: str


# Mandatory extensions for an Azure Local node
REQUIRED_EXTENSIONS: List[ExtensionSpec] = [
    ExtensionSpec("AzureEdgeTelemetryAndDiagnostics", "Microsoft.AzureStack.Observability", "TelemetryAndDiagnostics"),
    ExtensionSpec("AzureEdgeDeviceManagement", "Microsoft.Edge", "DeviceManagementExtension"),
    ExtensionSpec("AzureEdgeLifecycleManager", "Microsoft.AzureStack.Orchestration", "LcmController"),
    ExtensionSpec("AzureEdgeRemoteSupport", "Microsoft.AzureStack.Observability", "EdgeRemoteSupport"),
]


@dataclass
class ExtensionStatus:
    name: str
    state: str

    @property
    def succeeded(self) -> bool:
        return self.state.lower() == "succeeded"

    @property
    def failed(self) -> bool:
        return self.state.lower() == "failed"


def _state_of(extension: Any) -> str:
    props = getattr(extension, "properties", None)
    return str(getattr(props, "provisioning_state", None) or "Unknown")


class ExtensionManager:
    """Lists, removes and reinstalls Arc extensions on a machine."""

    def __init__(self, azure: AzureClient, resource_group: Optional[str] = None) -> None:
        self.azure = azure
        self.resource_group = resource_group or Config.AZURE_RESOURCE_GROUP

    def status(self, machine: str) -> List[ExtensionStatus]:
        return [
            ExtensionStatus(name=ext.name, state=_state_of(ext))
            for ext in self.azure.list_extensions(self.resource_group, machine)
        ]

    def repair(self, machine: str, required: Optional[List[ExtensionSpec]] = None) -> List[str]:
        """
        Remove failed extensions and install missing required ones.

        Args:
            machine: Arc machine name
            required: Extensions that must be present (defaults to REQUIRED_EXTENSIONS)

        Returns:
            Names of the extensions that were (re)installed
        """
        required = REQUIRED_EXTENSIONS if required is None else required
        if self.azure.get_machine(self.resource_group, machine) is None:
            raise RuntimeError(f"Arc machine {machine!r} not found in {self.resource_group}")

        current = {ext.name: ext for ext in self.status(machine)}

        for ext in current.values():
            if ext.failed:
                print(f"🗑️  Removing failed extension {ext.name}")
                self.azure.delete_extension(self.resource_group, machine, ext.name)

        to_install = [
            spec for spec in required if spec.name not in current or current[spec.name].failed
        ]
        if not to_install:
            print("✅ All required extensions present, nothing to repair")
            return []

        for spec in to_install:
            print(f"📦 Installing extension {spec.name} ({spec.publisher}/{spec.type})")
            self.azure.create_extension(
                self.resource_group, machine, spec.name, spec.publisher, spec.type, Config.AZURE_REGION
            )

        wait(Config.EXTENSION_WAIT, "Waiting for extensions to install", allow_skip=True)

        final = {ext.name: ext for ext in self.status(machine)}
        for spec in to_install:
            ext = final.get(spec.name)
            state = ext.state if ext else "Missing"
            icon = "✅" if ext and ext.succeeded else "⚠️ "
            print(f"   {icon} {spec.name}: {state}")

        logger.info(f"Reinstalled extensions on {machine}: {[s.name for s in to_install]}")
        return [spec.name for spec in to_install]
