"""Main entry point for a full lab deployment."""

from typing import Optional

from hybridlab.cluster_node import ClusterNodeConfigurator
from hybridlab.domain_controller import DomainControllerConfigurator
from hybridlab.infrastructure import InfrastructureProvisioner
from hybridlab.powershell import PowerShellRunner


def deploy(runner: Optional[PowerShellRunner] = None) -> None:
    """Provision the host, configure the DC, then configure and register the node. Idempotent."""
    runner = runner or PowerShellRunner()

    print("=" * 60)
    print("🚀 Hybrid Lab Deployment")
    print("=" * 60)

    # Phase 1: switch, NAT, base images, VMs
    print("\n🖥️  Phase 1: Infrastructure")
    InfrastructureProvisioner(runner).provision()

    # Phase 2: AD forest, DNS, deployment OU
    print("\n🏛️  Phase 2: Domain Controller")
    DomainControllerConfigurator(runner).configure()

    # Phase 3: node networking and Arc registration
    print("\n☁️  Phase 3: Cluster Node")
    ClusterNodeConfigurator(runner).configure()

    print("\n" + "=" * 60)
    print("✅ Deployment Complete")
    print("=" * 60)


if __name__ == "__main__":
    deploy()
