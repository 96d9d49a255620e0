#!/usr/bin/env python3
"""
src/hybridlab/images.py

Make VM images available to the HCI cluster. Two ways:

- download: export a marketplace image through a temporary managed disk (or
  take a local VHD/VHDX), convert to VHDX on the host, copy it into cluster
  storage on the node and register a gallery image on the custom location
- marketplace: register a marketplace gallery image that the cluster
  downloads itself
"""

import logging
import os
from typing import Any, Optional

import requests
from rich.progress import BarColumn, DownloadColumn, Progress, TextColumn, TransferSpeedColumn

from hybridlab.cloud import AZURE_STACK_HCI_API, AzureClient
from hybridlab.config import Config
from hybridlab.hyperv import HyperVManager
from hybridlab.powershell import GuestCredential, PowerShellRunner
from hybridlab.waits import console

logger = logging.getLogger(__name__)

SAS_DURATION_SECONDS = 4 * 3600


def _version_key(version: str) -> tuple:
    return tuple(int(part) if part.isdigit() else 0 for part in version.split("."))


def resolve_image_version(compute: Any, location: str, publisher: str, offer: str, sku: str, version: str) -> str:
    """Turn 'latest' into the highest published version; other values pass through."""
    if version.lower() != "latest":
        return version
    versions = [img.name for img in compute.virtual_machine_images.list(location, publisher, offer, sku)]
    if not versions:
        raise RuntimeError(f"No versions published for {publisher}:{offer}:{sku} in {location}")
    return max(versions, key=_version_key)


def marketplace_image_id(subscription_id: str, location: str, publisher: str, offer: str, sku: str, version: str) -> str:
    return (
        f"/Subscriptions/{subscription_id}/Providers/Microsoft.Compute/Locations/{location}"
        f"/Publishers/{publisher}/ArtifactTypes/VMImage/Offers/{offer}/Skus/{sku}/Versions/{version}"
    )


def download_file(url: str, destination: str, chunk_size: int = 8 * 1024 * 1024) -> None:
    """Stream a URL to disk with a progress bar. Skips if the file already exists."""
    if os.path.isfile(destination):
        print(f"✅ {destination} already exists locally. Skipping download.")
        return

    partial = destination + ".part"
    with requests.get(url, stream=True, timeout=60) as response:
        response.raise_for_status()
        total = int(response.headers.get("Content-Length", 0)) or None
        with Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            DownloadColumn(),
            TransferSpeedColumn(),
            console=console,
        ) as progress, open(partial, "wb") as out:
            task = progress.add_task(f"Downloading {os.path.basename(destination)}", total=total)
            for chunk in response.iter_content(chunk_size=chunk_size):
                if chunk:
                    out.write(chunk)
                    progress.update(task, advance=len(chunk))
    os.replace(partial, destination)


class ImageImporter:
    """Imports disk images into the lab's HCI cluster."""

    def __init__(self, runner: Optional[PowerShellRunner] = None, azure: Optional[AzureClient] = None) -> None:
        self.runner = runner or PowerShellRunner()
        self.hyperv = HyperVManager(self.runner)
        self._azure = azure
        self.node_cred = GuestCredential(Config.ADMIN_USER, Config.ADMIN_PASSWORD)

    @property
    def azure(self) -> AzureClient:
        if self._azure is None:
            self._azure = AzureClient()
        return self._azure

    def _connect(self) -> None:
        self.azure.login()
        self.azure.select_subscription()

    def _custom_location(self) -> str:
        return self.azure.custom_location_id(Config.AZURE_RESOURCE_GROUP, Config.CUSTOM_LOCATION_NAME)

    def export_marketplace_vhd(self, publisher: str, offer: str, sku: str, version: str, destination: str) -> None:
        """Create a temporary managed disk from a marketplace image and download it as VHD."""
        if os.path.isfile(destination):
            print(f"✅ {destination} already downloaded. Skipping export.")
            return

        rg, location = Config.AZURE_RESOURCE_GROUP, Config.AZURE_REGION
        compute = self.azure.compute
        version = resolve_image_version(compute, location, publisher, offer, sku, version)
        disk_name = f"hybridlab-export-{sku}-{version}".replace(".", "-")[:80]
        image_id = marketplace_image_id(self.azure.subscription_id, location, publisher, offer, sku, version)

        print(f"💽 Creating temporary disk {disk_name} from {publisher}:{offer}:{sku}:{version}")
        compute.disks.begin_create_or_update(
            rg,
            disk_name,
            {
                "location": location,
                "hyper_v_generation": "V2",
                "creation_data": {"create_option": "FromImage", "image_reference": {"id": image_id}},
            },
        ).result()

        try:
            access = compute.disks.begin_grant_access(
                rg, disk_name, {"access": "Read", "duration_in_seconds": SAS_DURATION_SECONDS}
            ).result()
            try:
                download_file(access.access_sas, destination)
            finally:
                compute.disks.begin_revoke_access(rg, disk_name).result()
        finally:
            print(f"🗑️  Deleting temporary disk {disk_name}")
            compute.disks.begin_delete(rg, disk_name).result()

    def _create_gallery_image(self, image_name: str, image_path: str, os_type: str) -> None:
        image_id = self.azure.gallery_image_id(Config.AZURE_RESOURCE_GROUP, image_name)
        print(f"🖼️  Creating gallery image {image_name!r} from {image_path}")
        self.azure.put_resource(
            image_id,
            AZURE_STACK_HCI_API,
            {"imagePath": image_path, "osType": os_type, "hyperVGeneration": "V2"},
            location=Config.AZURE_REGION,
            custom_location=self._custom_location(),
        )

    def import_marketplace_vhd(
        self,
        image_name: str,
        publisher: str = "",
        offer: str = "",
        sku: str = "",
        version: str = "latest",
        os_type: str = "Windows",
        source_path: Optional[str] = None,
    ) -> bool:
        """
        Download (or take a local) image, convert it, copy it to the node and register it.

        Returns:
            True if the gallery image was created, False if it already existed
        """
        if self.runner.is_remote:
            raise RuntimeError("Image download must run on the Hyper-V host (HYPERV_HOST must be empty)")
        if not source_path and not (publisher and offer and sku):
            raise ValueError("Give either a source path or publisher, offer and sku")

        self._connect()
        if self.azure.resource_exists(
            self.azure.gallery_image_id(Config.AZURE_RESOURCE_GROUP, image_name), AZURE_STACK_HCI_API
        ):
            print(f"✅ Gallery image {image_name!r} already exists, skipping.")
            return False

        download_dir = Config.download_path()
        self.hyperv.ensure_folder(download_dir)

        if source_path and source_path.lower().endswith(".vhdx"):
            vhdx = source_path
        else:
            vhdx = f"{download_dir}\\{image_name}.vhdx"
            if self.hyperv.path_exists(vhdx):
                print(f"✅ {vhdx} already exists. Skipping export and conversion.")
            else:
                vhd = source_path or f"{download_dir}\\{image_name}.vhd"
                if not source_path:
                    self.export_marketplace_vhd(publisher, offer, sku, version, vhd)
                self.hyperv.convert_vhd(vhd, vhdx)

        target = f"{Config.CLUSTER_IMAGE_PATH}\\{image_name}.vhdx"
        print(f"📤 Copying {vhdx} to {Config.NODE_VM_NAME}:{target}")
        self.runner.copy_to_vm(Config.NODE_VM_NAME, self.node_cred, vhdx, target)

        self._create_gallery_image(image_name, target, os_type)
        print(f"✅ Image {image_name!r} imported")
        return True

    def create_marketplace_gallery_image(
        self,
        image_name: str,
        publisher: str,
        offer: str,
        sku: str,
        version: str = "latest",
        os_type: str = "Windows",
    ) -> bool:
        """
        Register a marketplace gallery image that the cluster downloads itself.

        Returns:
            True if created, False if it already existed
        """
        self._connect()
        image_id = self.azure.marketplace_gallery_image_id(Config.AZURE_RESOURCE_GROUP, image_name)
        if self.azure.resource_exists(image_id, AZURE_STACK_HCI_API):
            print(f"✅ Marketplace gallery image {image_name!r} already exists, skipping.")
            return False

        version = resolve_image_version(self.azure.compute, Config.AZURE_REGION, publisher, offer, sku, version)
        print(f"🛒 Creating marketplace gallery image {image_name!r} ({publisher}:{offer}:{sku}:{version})")
        self.azure.put_resource(
            image_id,
            AZURE_STACK_HCI_API,
            {
                "osType": os_type,
                "hyperVGeneration": "V2",
                "identifier": {"publisher": publisher, "offer": offer, "sku": sku},
                "version": {"name": version},
            },
            location=Config.AZURE_REGION,
            custom_location=self._custom_location(),
        )
        logger.info(f"Marketplace gallery image {image_name} requested; the cluster downloads it in the background")
        return True
