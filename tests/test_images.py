"""Tests for images module."""
from unittest import mock

import pytest

from hybridlab.cloud import AZURE_STACK_HCI_API
from hybridlab.images import ImageImporter, download_file, marketplace_image_id, resolve_image_version


def image_versions(*names):
    images = []
    for name in names:
        img = mock.MagicMock()
        img.name = name
        images.append(img)
    return images


@pytest.fixture
def importer(mock_runner, mock_azure):
    imp = ImageImporter(mock_runner, mock_azure)
    imp.hyperv = mock.MagicMock()
    imp.hyperv.path_exists.return_value = False
    mock_azure.resource_exists.return_value = False
    return imp


class TestVersionResolution:
    def test_latest_picks_highest_numeric_version(self):
        compute = mock.MagicMock()
        compute.virtual_machine_images.list.return_value = image_versions("20348.9.1", "20348.10.2", "20348.2.100")

        version = resolve_image_version(compute, "eastus", "pub", "offer", "sku", "latest")

        assert version == "20348.10.2"
        compute.virtual_machine_images.list.assert_called_once_with("eastus", "pub", "offer", "sku")

    def test_explicit_version_passes_through(self):
        compute = mock.MagicMock()

        assert resolve_image_version(compute, "eastus", "p", "o", "s", "1.2.3") == "1.2.3"
        compute.virtual_machine_images.list.assert_not_called()

    def test_no_versions_raises(self):
        compute = mock.MagicMock()
        compute.virtual_machine_images.list.return_value = []

        with pytest.raises(RuntimeError, match="No versions published"):
            resolve_image_version(compute, "eastus", "p", "o", "s", "Latest")

    def test_marketplace_image_id(self):
        assert marketplace_image_id("sub-1", "eastus", "p", "o", "s", "1.0") == (
            "/Subscriptions/sub-1/Providers/Microsoft.Compute/Locations/eastus"
            "/Publishers/p/ArtifactTypes/VMImage/Offers/o/Skus/s/Versions/1.0"
        )


class TestDownload:
    def test_streams_to_part_file_then_renames(self, tmp_path):
        destination = tmp_path / "image.vhd"
        response = mock.MagicMock()
        response.headers = {"Content-Length": "6"}
        response.iter_content.return_value = [b"abc", b"", b"def"]

        with mock.patch("hybridlab.images.requests.get") as mock_get:
            mock_get.return_value.__enter__.return_value = response
            download_file("https://sas", str(destination))

        assert destination.read_bytes() == b"abcdef"
        assert not (tmp_path / "image.vhd.part").exists()
        mock_get.assert_called_once_with("https://sas", stream=True, timeout=60)

    def test_existing_file_is_not_downloaded(self, tmp_path):
        destination = tmp_path / "image.vhd"
        destination.write_bytes(b"x")

        with mock.patch("hybridlab.images.requests.get") as mock_get:
            download_file("https://sas", str(destination))

        mock_get.assert_not_called()


class TestExport:
    def test_disk_is_always_cleaned_up(self, importer, mock_azure):
        """Access is revoked and the temporary disk deleted even if the download fails."""
        compute = mock_azure.compute
        compute.disks.begin_grant_access.return_value.result.return_value = mock.MagicMock(access_sas="https://sas")

        with mock.patch("hybridlab.images.download_file", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                importer.export_marketplace_vhd("pub", "offer", "sku", "1.0.0", r"C:\Lab\Downloads\img.vhd")

        rg, disk_name, params = compute.disks.begin_create_or_update.call_args.args
        assert rg == "lab-rg"
        assert disk_name == "hybridlab-export-sku-1-0-0"
        assert params["creation_data"]["create_option"] == "FromImage"
        compute.disks.begin_revoke_access.assert_called_once_with("lab-rg", disk_name)
        compute.disks.begin_delete.assert_called_once_with("lab-rg", disk_name)

    def test_downloaded_vhd_skips_disk_creation(self, importer, mock_azure, tmp_path):
        destination = tmp_path / "img.vhd"
        destination.write_bytes(b"vhd")

        importer.export_marketplace_vhd("pub", "offer", "sku", "1.0.0", str(destination))

        mock_azure.compute.disks.begin_create_or_update.assert_not_called()
        mock_azure.compute.disks.begin_grant_access.assert_not_called()


class TestImportMarketplaceVhd:
    def test_refuses_remote_host(self, importer, mock_runner):
        mock_runner.is_remote = True

        with pytest.raises(RuntimeError, match="must run on the Hyper-V host"):
            importer.import_marketplace_vhd("img", "p", "o", "s")

    def test_needs_source_or_marketplace_reference(self, importer):
        with pytest.raises(ValueError, match="source path or publisher"):
            importer.import_marketplace_vhd("img", publisher="p")

    def test_existing_gallery_image_is_skipped(self, importer, mock_azure, mock_runner):
        mock_azure.resource_exists.return_value = True

        assert importer.import_marketplace_vhd("img", "p", "o", "s") is False
        mock_runner.copy_to_vm.assert_not_called()
        mock_azure.put_resource.assert_not_called()

    def test_marketplace_import_pipeline(self, importer, mock_azure, mock_runner):
        """Export, convert, copy to the node, register the gallery image."""
        with mock.patch.object(importer, "export_marketplace_vhd") as export:
            created = importer.import_marketplace_vhd("ws2022", "pub", "offer", "sku", os_type="Windows")

        assert created is True
        export.assert_called_once_with("pub", "offer", "sku", "latest", r"C:\Lab\Downloads\ws2022.vhd")
        importer.hyperv.convert_vhd.assert_called_once_with(
            r"C:\Lab\Downloads\ws2022.vhd", r"C:\Lab\Downloads\ws2022.vhdx"
        )
        vm, cred, source, target = mock_runner.copy_to_vm.call_args.args
        assert (vm, source, target) == ("Lab-Node", r"C:\Lab\Downloads\ws2022.vhdx", r"C:\ClusterStorage\Images\ws2022.vhdx")

        image_id, api, properties = mock_azure.put_resource.call_args.args
        assert image_id.endswith("/galleryImages/ws2022")
        assert api == AZURE_STACK_HCI_API
        assert properties == {
            "imagePath": r"C:\ClusterStorage\Images\ws2022.vhdx",
            "osType": "Windows",
            "hyperVGeneration": "V2",
        }
        assert mock_azure.put_resource.call_args.kwargs["custom_location"].endswith("/customLocations/lab-cl")

    def test_local_vhdx_skips_export_and_conversion(self, importer, mock_azure, mock_runner):
        with mock.patch.object(importer, "export_marketplace_vhd") as export:
            importer.import_marketplace_vhd("ubuntu", os_type="Linux", source_path=r"D:\images\ubuntu.vhdx")

        export.assert_not_called()
        importer.hyperv.convert_vhd.assert_not_called()
        assert mock_runner.copy_to_vm.call_args.args[2] == r"D:\images\ubuntu.vhdx"
        assert mock_azure.put_resource.call_args.args[2]["osType"] == "Linux"

    def test_converted_vhdx_skips_export_and_conversion(self, importer, mock_runner):
        importer.hyperv.path_exists.side_effect = lambda path: path == r"C:\Lab\Downloads\ws2022.vhdx"

        with mock.patch.object(importer, "export_marketplace_vhd") as export:
            assert importer.import_marketplace_vhd("ws2022", "pub", "offer", "sku") is True

        export.assert_not_called()
        importer.hyperv.convert_vhd.assert_not_called()
        assert mock_runner.copy_to_vm.call_args.args[2] == r"C:\Lab\Downloads\ws2022.vhdx"

    def test_local_vhd_is_converted(self, importer, mock_runner):
        with mock.patch.object(importer, "export_marketplace_vhd") as export:
            importer.import_marketplace_vhd("ubuntu", os_type="Linux", source_path=r"D:\images\ubuntu.vhd")

        export.assert_not_called()
        importer.hyperv.convert_vhd.assert_called_once_with(
            r"D:\images\ubuntu.vhd", r"C:\Lab\Downloads\ubuntu.vhdx"
        )


class TestMarketplaceGalleryImage:
    def test_creates_with_resolved_version(self, importer, mock_azure):
        mock_azure.compute.virtual_machine_images.list.return_value = image_versions("1.0.0", "1.1.0")

        assert importer.create_marketplace_gallery_image("ws", "pub", "offer", "sku") is True

        image_id, api, properties = mock_azure.put_resource.call_args.args
        assert image_id.endswith("/marketplaceGalleryImages/ws")
        assert properties["identifier"] == {"publisher": "pub", "offer": "offer", "sku": "sku"}
        assert properties["version"] == {"name": "1.1.0"}

    def test_existing_is_skipped(self, importer, mock_azure):
        mock_azure.resource_exists.return_value = True

        assert importer.create_marketplace_gallery_image("ws", "pub", "offer", "sku") is False
        mock_azure.put_resource.assert_not_called()
