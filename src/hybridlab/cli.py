#!/usr/bin/env python3
"""
Hybrid lab CLI - one command per lab script.

    hybridlab deploy             # provision + configure-dc + configure-node
    hybridlab status             # VM states
    hybridlab extensions repair  # fix failed Arc extensions
    hybridlab offboard           # tear everything down

Settings come from the environment or a .env file (see hybridlab.config).
"""

import logging
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from hybridlab.aks import AksTokenHelper
from hybridlab.cloud import AzureClient
from hybridlab.cluster_node import ClusterNodeConfigurator
from hybridlab.config import Config
from hybridlab.domain_controller import DomainControllerConfigurator
from hybridlab.extensions import ExtensionManager
from hybridlab.images import ImageImporter
from hybridlab.infrastructure import InfrastructureProvisioner, computer_name_for
from hybridlab.lifecycle import LabLifecycle
from hybridlab.main import deploy as run_deploy
from hybridlab.offboarding import Offboarder
from hybridlab.remote_access import RemoteAccess

# Initialize CLI app and console
app = typer.Typer(
    name="hybridlab",
    help="Hyper-V hybrid lab automation",
    add_completion=False
)
console = Console()

# Configure logging
logging.basicConfig(
    level=logging.WARNING,
    format="%(asctime)s [%(levelname)8s] %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)


def _fail(action: str, error: Exception) -> None:
    console.print(f"[red]❌ {action} failed: {error}[/red]")
    logger.exception(f"{action} failed")
    raise typer.Exit(1)


def _node_machine(machine: Optional[str]) -> str:
    return machine or computer_name_for(Config.NODE_VM_NAME)


def _connected_azure() -> AzureClient:
    azure = AzureClient()
    azure.login()
    azure.select_subscription()
    return azure


# === DEPLOYMENT COMMANDS ===

@app.command("deploy")
def deploy() -> None:
    """Run every deployment step in order."""
    try:
        run_deploy()
    except Exception as e:
        _fail("Deployment", e)


@app.command("provision")
def provision() -> None:
    """Create switch, NAT, base images and the lab VMs."""
    try:
        InfrastructureProvisioner().provision()
        console.print("[green]✅ Infrastructure ready[/green]")
    except Exception as e:
        _fail("Provisioning", e)


@app.command("configure-dc")
def configure_dc() -> None:
    """Promote the DC, configure DNS and create the deployment OU."""
    try:
        DomainControllerConfigurator().configure()
        console.print("[green]✅ Domain controller configured[/green]")
    except Exception as e:
        _fail("Domain controller configuration", e)


@app.command("configure-node")
def configure_node() -> None:
    """Configure the cluster node and register it with Azure Arc."""
    try:
        ClusterNodeConfigurator().configure()
        console.print("[green]✅ Cluster node configured[/green]")
    except Exception as e:
        _fail("Node configuration", e)


# === EXTENSION COMMANDS ===

extensions_app = typer.Typer(help="Arc extension troubleshooting")
app.add_typer(extensions_app, name="extensions")


@extensions_app.command("status")
def extensions_status(
    machine: Optional[str] = typer.Option(None, "--machine", "-m", help="Arc machine name (default: the node)")
) -> None:
    """Show extension provisioning states."""
    try:
        name = _node_machine(machine)
        statuses = ExtensionManager(_connected_azure()).status(name)

        table = Table(title=f"Extensions on {name}")
        table.add_column("Extension", style="cyan")
        table.add_column("State")
        for ext in statuses:
            style = "green" if ext.succeeded else "red" if ext.failed else "yellow"
            table.add_row(ext.name, f"[{style}]{ext.state}[/{style}]")
        console.print(table)
    except Exception as e:
        _fail("Extension status", e)


@extensions_app.command("repair")
def extensions_repair(
    machine: Optional[str] = typer.Option(None, "--machine", "-m", help="Arc machine name (default: the node)")
) -> None:
    """Remove failed extensions and reinstall missing required ones."""
    try:
        installed = ExtensionManager(_connected_azure()).repair(_node_machine(machine))
        if installed:
            console.print(f"[green]✅ Reinstalled: {', '.join(installed)}[/green]")
    except Exception as e:
        _fail("Extension repair", e)


# === DAY-2 COMMANDS ===

@app.command("offboard")
def offboard(
    keep_azure: bool = typer.Option(False, "--keep-azure", help="Leave Azure resources in place"),
    delete_resource_group: bool = typer.Option(
        False, "--delete-resource-group", help="Also delete the Azure resource group"
    ),
    keep_images: bool = typer.Option(
        False, "--keep-images", help="Keep the lab folder and its base images"
    ),
) -> None:
    """Remove Azure resources, VMs, NAT, switch and lab folders."""
    try:
        report = Offboarder().offboard(
            remove_azure=not keep_azure, delete_resource_group=delete_resource_group, keep_images=keep_images
        )
        if report.missing:
            console.print(f"[yellow]⚠️  Already gone: {', '.join(report.missing)}[/yellow]")
    except Exception as e:
        _fail("Offboarding", e)


@app.command("start")
def start() -> None:
    """Start the DC, then the node."""
    try:
        LabLifecycle().start_lab()
    except Exception as e:
        _fail("Start", e)


@app.command("stop")
def stop(force: bool = typer.Option(False, "--force", help="Turn VMs off instead of shutting down")) -> None:
    """Stop the node, then the DC."""
    try:
        LabLifecycle().stop_lab(force=force)
    except Exception as e:
        _fail("Stop", e)


@app.command("status")
def status() -> None:
    """Show lab VM states."""
    try:
        table = Table(title="Lab VMs")
        table.add_column("VM", style="cyan")
        table.add_column("State")
        for name, state in LabLifecycle().lab_status():
            style = "green" if state == "Running" else "red" if state == "Missing" else "yellow"
            table.add_row(name, f"[{style}]{state}[/{style}]")
        console.print(table)
    except Exception as e:
        _fail("Status", e)


# === IMAGE COMMANDS ===

image_app = typer.Typer(help="VM image import")
app.add_typer(image_app, name="image")


@image_app.command("download")
def image_download(
    name: str = typer.Argument(..., help="Gallery image name"),
    publisher: str = typer.Option("", help="Marketplace publisher"),
    offer: str = typer.Option("", help="Marketplace offer"),
    sku: str = typer.Option("", help="Marketplace SKU"),
    version: str = typer.Option("latest", help="Image version"),
    os_type: str = typer.Option("Windows", "--os-type", help="Windows or Linux"),
    source: Optional[str] = typer.Option(None, "--source", help="Local VHD/VHDX instead of a marketplace image"),
) -> None:
    """Download a marketplace image (or take a local disk) and import it into the cluster."""
    try:
        ImageImporter().import_marketplace_vhd(
            name, publisher, offer, sku, version=version, os_type=os_type, source_path=source
        )
    except Exception as e:
        _fail("Image import", e)


@image_app.command("marketplace")
def image_marketplace(
    name: str = typer.Argument(..., help="Marketplace gallery image name"),
    publisher: str = typer.Option(..., help="Marketplace publisher"),
    offer: str = typer.Option(..., help="Marketplace offer"),
    sku: str = typer.Option(..., help="Marketplace SKU"),
    version: str = typer.Option("latest", help="Image version"),
    os_type: str = typer.Option("Windows", "--os-type", help="Windows or Linux"),
) -> None:
    """Create a marketplace gallery image that the cluster downloads itself."""
    try:
        ImageImporter().create_marketplace_gallery_image(name, publisher, offer, sku, version=version, os_type=os_type)
    except Exception as e:
        _fail("Marketplace image", e)


# === ACCESS COMMANDS ===

@app.command("aks-token")
def aks_token(
    cluster: Optional[str] = typer.Option(None, "--cluster", help="AKS cluster name"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Kubeconfig path to write"),
    show: bool = typer.Option(False, "--show", help="Print the token"),
) -> None:
    """Create an admin service-account token and a kubeconfig that uses it."""
    try:
        token = AksTokenHelper(cluster_name=cluster).get_token(output)
        if show:
            console.print(token, soft_wrap=True)
    except Exception as e:
        _fail("AKS token", e)


@app.command("ssh")
def ssh(
    machine: Optional[str] = typer.Option(None, "--machine", "-m", help="Arc machine name (default: the node)"),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Local user on the machine"),
) -> None:
    """SSH to an Arc machine."""
    try:
        code = RemoteAccess().ssh(_node_machine(machine), user)
    except Exception as e:
        _fail("SSH", e)
    raise typer.Exit(code)


@app.command("rdp")
def rdp(
    machine: Optional[str] = typer.Option(None, "--machine", "-m", help="Arc machine name (default: the node)"),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Local user on the machine"),
    port: int = typer.Option(13389, "--port", "-p", help="Local port for the tunnel"),
) -> None:
    """RDP to an Arc machine through an SSH tunnel."""
    try:
        RemoteAccess().rdp(_node_machine(machine), user, local_port=port)
    except Exception as e:
        _fail("RDP", e)


# === MAIN ENTRY POINT ===

@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging")
) -> None:
    """
    Hybrid lab automation

    Build and run a nested Azure Local lab on a Hyper-V host.
    """
    if debug:
        logging.getLogger().setLevel(logging.DEBUG)
    elif verbose:
        logging.getLogger().setLevel(logging.INFO)


if __name__ == "__main__":
    app()
