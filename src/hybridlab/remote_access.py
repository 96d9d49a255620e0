"""
SSH and RDP into the Arc-registered node through Azure Arc.

Both go through `az ssh arc`, which needs the hybrid connectivity endpoint
and an SSH service configuration on the machine.
"""

import logging
import subprocess
from typing import List, Optional

from hybridlab.cloud import HYBRID_CONNECTIVITY_API, AzureClient, azure_cli
from hybridlab.config import Config
from hybridlab.waits import wait

logger = logging.getLogger(__name__)

RDP_PORT = 3389
TUNNEL_WAIT = 15


class RemoteAccess:
    """Opens SSH sessions and RDP tunnels to an Arc machine."""

    def __init__(self, azure: Optional[AzureClient] = None, resource_group: Optional[str] = None) -> None:
        self._azure = azure
        self.resource_group = resource_group or Config.AZURE_RESOURCE_GROUP

    @property
    def azure(self) -> AzureClient:
        if self._azure is None:
            self._azure = AzureClient()
        return self._azure

    def ensure_connectivity_endpoint(self, machine: str, port: int = 22) -> bool:
        """
        Create the default endpoint and SSH service configuration when absent.

        Returns:
            True if anything was created
        """
        self.azure.login()
        self.azure.select_subscription()

        endpoint_id = (
            f"{self.azure.machine_id(self.resource_group, machine)}"
            "/providers/Microsoft.HybridConnectivity/endpoints/default"
        )
        service_id = f"{endpoint_id}/serviceConfigurations/SSH"
        created = False

        if not self.azure.resource_exists(endpoint_id, HYBRID_CONNECTIVITY_API):
            print(f"🔌 Creating connectivity endpoint on {machine}")
            self.azure.put_resource(endpoint_id, HYBRID_CONNECTIVITY_API, {"type": "default"})
            created = True

        if not self.azure.resource_exists(service_id, HYBRID_CONNECTIVITY_API):
            print(f"🔌 Enabling SSH on port {port} for {machine}")
            self.azure.put_resource(service_id, HYBRID_CONNECTIVITY_API, {"serviceName": "SSH", "port": port})
            created = True

        return created

    def _ssh_command(self, machine: str, user: str) -> List[str]:
        return [
            azure_cli(), "ssh", "arc",
            "--resource-group", self.resource_group,
            "--name", machine,
            "--local-user", user,
        ]

    def ssh(self, machine: str, user: Optional[str] = None) -> int:
        """Interactive SSH session. Returns the ssh exit code."""
        self.ensure_connectivity_endpoint(machine)
        command = self._ssh_command(machine, user or Config.ADMIN_USER)
        logger.debug(f"Running {' '.join(command)}")
        return subprocess.run(command).returncode

    def rdp(self, machine: str, user: Optional[str] = None, local_port: int = 13389) -> None:
        """Forward local_port to the guest's RDP port and open the Remote Desktop client."""
        self.ensure_connectivity_endpoint(machine)
        command = self._ssh_command(machine, user or Config.ADMIN_USER) + [
            "--", "-L", f"{local_port}:localhost:{RDP_PORT}", "-N",
        ]
        print(f"🚇 Opening tunnel localhost:{local_port} -> {machine}:{RDP_PORT}")
        tunnel = subprocess.Popen(command)
        try:
            wait(TUNNEL_WAIT, "Waiting for the tunnel to come up")
            if tunnel.poll() is not None:
                raise RuntimeError(f"Tunnel exited early with code {tunnel.returncode}")
            subprocess.run(["mstsc", f"/v:localhost:{local_port}"])
        finally:
            tunnel.terminate()
            tunnel.wait(timeout=10)
            print("🔒 Tunnel closed")
