"""Tests for lifecycle module."""
from unittest import mock

import pytest

from hybridlab.lifecycle import LabLifecycle


@pytest.fixture
def lifecycle(mock_runner):
    lab = LabLifecycle(mock_runner)
    lab.hyperv = mock.MagicMock()
    return lab


class TestStart:
    def test_dc_before_node_with_wait(self, lifecycle):
        """DC starts, boot wait, then node."""
        lifecycle.hyperv.start_vm.return_value = True
        manager = mock.MagicMock()
        manager.attach_mock(lifecycle.hyperv.start_vm, "start_vm")

        with mock.patch("hybridlab.lifecycle.wait") as mock_wait:
            manager.attach_mock(mock_wait, "wait")
            lifecycle.start_lab()

        assert [name for name, _, _ in manager.mock_calls] == ["start_vm", "wait", "start_vm"]
        assert manager.mock_calls[0].args == ("Lab-DC",)
        assert manager.mock_calls[2].args == ("Lab-Node",)

    def test_running_dc_skips_wait(self, lifecycle):
        lifecycle.hyperv.start_vm.side_effect = [False, True]

        with mock.patch("hybridlab.lifecycle.wait") as mock_wait:
            lifecycle.start_lab()

        mock_wait.assert_not_called()
        assert lifecycle.hyperv.start_vm.call_count == 2


class TestStop:
    def test_node_before_dc(self, lifecycle):
        lifecycle.hyperv.stop_vm.return_value = True

        with mock.patch("hybridlab.lifecycle.wait") as mock_wait:
            lifecycle.stop_lab(force=True)

        assert lifecycle.hyperv.stop_vm.call_args_list == [
            mock.call("Lab-Node", force=True),
            mock.call("Lab-DC", force=True),
        ]
        mock_wait.assert_called_once()

    def test_missing_vm_propagates(self, lifecycle):
        lifecycle.hyperv.stop_vm.side_effect = RuntimeError("VM 'Lab-Node' does not exist")

        with pytest.raises(RuntimeError, match="does not exist"):
            lifecycle.stop_lab()


class TestStatus:
    def test_missing_vm_reported(self, lifecycle):
        lifecycle.hyperv.list_vms.return_value = {"Lab-DC": "Running", "Lab-Node": None}

        assert lifecycle.lab_status() == [("Lab-DC", "Running"), ("Lab-Node", "Missing")]
        lifecycle.hyperv.list_vms.assert_called_once_with(["Lab-DC", "Lab-Node"])
