"""Tests for config module."""
import pytest

from hybridlab.config import Config


class TestDataDisks:
    def test_default_two_disks(self, monkeypatch):
        """Should default to two 256GB data disks."""
        monkeypatch.delenv("NODE_DATA_DISKS", raising=False)

        disks = Config.get_data_disks()

        assert [(d.name, d.size_gb) for d in disks] == [("Data01", 256), ("Data02", 256)]

    def test_custom_sizes_and_blank_entries(self, monkeypatch):
        """Should skip blank entries and number disks sequentially."""
        monkeypatch.setenv("NODE_DATA_DISKS", "100, ,200,")

        disks = Config.get_data_disks()

        assert [(d.name, d.size_gb) for d in disks] == [("Data01", 100), ("Data02", 200)]

    def test_non_numeric_entry_raises(self, monkeypatch):
        monkeypatch.setenv("NODE_DATA_DISKS", "256,big")

        with pytest.raises(ValueError, match="not a number"):
            Config.get_data_disks()

    def test_zero_size_raises(self, monkeypatch):
        monkeypatch.setenv("NODE_DATA_DISKS", "0")

        with pytest.raises(ValueError, match="must be positive"):
            Config.get_data_disks()


class TestNetwork:
    def test_addresses_derived_from_subnet(self, mock_env):
        """Should use the first three hosts as gateway, DC and node."""
        network = Config.network()

        assert network.subnet == "10.0.0.0/24"
        assert network.prefix_length == 24
        assert (network.gateway, network.dc_ip, network.node_ip) == ("10.0.0.1", "10.0.0.2", "10.0.0.3")
        assert network.switch_name == "LabSwitch"
        assert network.nat_name == "LabNAT"

    def test_explicit_addresses_win(self, mock_env, monkeypatch):
        monkeypatch.setattr(Config, "DC_IP", "10.0.0.10")
        monkeypatch.setattr(Config, "NODE_IP", "10.0.0.11")

        network = Config.network()

        assert network.gateway == "10.0.0.1"
        assert network.dc_ip == "10.0.0.10"
        assert network.node_ip == "10.0.0.11"

    def test_address_outside_subnet_raises(self, mock_env, monkeypatch):
        monkeypatch.setattr(Config, "NODE_IP", "192.168.1.5")

        with pytest.raises(ValueError, match="outside"):
            Config.network()

    def test_subnet_too_small_raises(self, mock_env, monkeypatch):
        monkeypatch.setattr(Config, "NAT_SUBNET", "10.0.0.0/30")

        with pytest.raises(ValueError, match="too small"):
            Config.network()


class TestVMSpecs:
    def test_dc_spec_is_plain(self, mock_env):
        spec = Config.get_dc_spec()

        assert spec.name == "Lab-DC"
        assert spec.memory_gb == 4
        assert spec.nic_count == 1
        assert spec.data_disks == []
        assert not spec.nested_virtualization

    def test_node_spec_has_hci_features(self, mock_env):
        """Node needs nested virtualization, MAC spoofing, TPM and data disks."""
        spec = Config.get_node_spec()

        assert spec.name == "Lab-Node"
        assert spec.nic_count == 2
        assert len(spec.data_disks) == 2
        assert spec.nested_virtualization
        assert spec.mac_spoofing
        assert spec.tpm


class TestPaths:
    def test_lab_subfolders(self, mock_env, monkeypatch):
        monkeypatch.setattr(Config, "LAB_PATH", "C:\\Lab\\")

        assert Config.vm_path() == r"C:\Lab\VMs"
        assert Config.vhd_path() == r"C:\Lab\Disks"
        assert Config.download_path() == r"C:\Lab\Downloads"


class TestRequire:
    def test_passes_when_set(self, mock_env):
        Config.require("ADMIN_PASSWORD", "DOMAIN_NAME")

    def test_lists_every_missing_setting(self, mock_env, monkeypatch):
        monkeypatch.setattr(Config, "ADMIN_PASSWORD", "")
        monkeypatch.setattr(Config, "AZURE_TENANT_ID", "")

        with pytest.raises(ValueError, match="ADMIN_PASSWORD, AZURE_TENANT_ID"):
            Config.require("ADMIN_PASSWORD", "DOMAIN_NAME", "AZURE_TENANT_ID")

    def test_subscription_or_none(self, mock_env, monkeypatch):
        assert Config.subscription_or_none() is None
        monkeypatch.setattr(Config, "AZURE_SUBSCRIPTION_ID", "sub-9")
        assert Config.subscription_or_none() == "sub-9"
