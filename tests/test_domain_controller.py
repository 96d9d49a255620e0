"""Tests for domain_controller module."""
from unittest import mock

import pytest

from hybridlab.domain_controller import DomainControllerConfigurator, ou_distinguished_name
from hybridlab.powershell import PowerShellError

from conftest import ps_result, scripts_run


def guest_responder(answers):
    """run_in_vm side effect answering by script fragment."""
    def _run_in_vm(vm_name, credential, script, check=True, timeout=None):
        for fragment, result in answers.items():
            if fragment in script:
                return result() if callable(result) else result
        return ps_result()
    return _run_in_vm


class TestDistinguishedName:
    def test_multi_label_domain(self):
        assert ou_distinguished_name("HCI", "corp.contoso.com") == "OU=HCI,DC=corp,DC=contoso,DC=com"

    def test_ignores_trailing_dot(self):
        assert ou_distinguished_name("HCI", "lab.local.") == "OU=HCI,DC=lab,DC=local"


class TestCredentials:
    def test_domain_credential_uses_netbios(self, mock_runner):
        dc = DomainControllerConfigurator(mock_runner)

        assert dc.local_cred.user == "Administrator"
        assert dc.domain_cred.user == "LAB\\Administrator"


class TestIsDomainController:
    def test_true_when_domain_role_is_dc(self, mock_runner):
        mock_runner.run_in_vm.return_value = ps_result("True")

        assert DomainControllerConfigurator(mock_runner).is_domain_controller() is True
        assert mock_runner.run_in_vm.call_args.kwargs["check"] is False

    def test_false_when_domain_logon_fails(self, mock_runner):
        mock_runner.run_in_vm.return_value = ps_result("", returncode=1, stderr="logon failure")

        assert DomainControllerConfigurator(mock_runner).is_domain_controller() is False


class TestWaitForAD:
    def test_ready_after_retries(self, mock_runner, monkeypatch):
        from hybridlab.config import Config
        monkeypatch.setattr(Config, "AD_READY_TIMEOUT", 300)
        monkeypatch.setattr(Config, "AD_READY_INTERVAL", 1)
        mock_runner.run_in_vm.side_effect = [
            ps_result("", returncode=1),
            ps_result("", returncode=1),
            ps_result("lab.local"),
        ]

        DomainControllerConfigurator(mock_runner).wait_for_ad()

        assert mock_runner.run_in_vm.call_count == 3

    def test_timeout_raises(self, mock_runner):
        mock_runner.run_in_vm.return_value = ps_result("", returncode=1)

        with pytest.raises(RuntimeError, match="Active Directory not ready"):
            DomainControllerConfigurator(mock_runner).wait_for_ad()


class TestDeploymentOU:
    def test_skips_existing_ou(self, mock_runner):
        mock_runner.run_in_vm.return_value = ps_result("True")

        assert DomainControllerConfigurator(mock_runner).create_deployment_ou() is False
        assert mock_runner.run_in_vm.call_count == 1

    def test_creates_ou_with_precreation_tool(self, mock_runner):
        mock_runner.run_in_vm.return_value = ps_result("False")

        assert DomainControllerConfigurator(mock_runner).create_deployment_ou() is True

        script = scripts_run(mock_runner)[-1]
        assert "Install-Module -Name AsHciADArtifactsPreCreationTool" in script
        assert "ConvertTo-SecureString 'Lcm@ssw0rd!'" in script
        assert "PSCredential('lcmadmin', $lcmPassword)" in script
        assert "-AsHciOUName 'OU=AzureLocal,DC=lab,DC=local'" in script


class TestConfigure:
    def test_fresh_dc_runs_every_step_in_order(self, mock_runner):
        """Network, role, promotion, reboot, AD wait, forwarder, OU, time."""
        mock_runner.run_in_vm.side_effect = guest_responder({
            "DomainRole": ps_result("", returncode=1),
            "DNSRoot": ps_result("lab.local"),
            "Get-ADOrganizationalUnit": ps_result("False"),
        })

        with mock.patch("hybridlab.domain_controller.wait") as mock_wait:
            DomainControllerConfigurator(mock_runner).configure()

        scripts = scripts_run(mock_runner)

        def index_of(fragment):
            return next(i for i, s in enumerate(scripts) if fragment in s)

        steps = [
            "New-NetIPAddress",
            "Install-WindowsFeature -Name AD-Domain-Services",
            "Install-ADDSForest -DomainName 'lab.local' -DomainNetbiosName 'LAB'",
            "Restart-VM -Name 'Lab-DC' -Force",
            "DNSRoot",
            "Set-DnsServerForwarder -IPAddress '8.8.8.8'",
            "New-HciAdObjectsPreCreation",
            "w32tm",
        ]
        positions = [index_of(step) for step in steps]
        assert positions == sorted(positions)
        mock_wait.assert_called_once()

        network_script = scripts[index_of("New-NetIPAddress")]
        assert "-IPAddress '10.0.0.2' -PrefixLength 24 -DefaultGateway '10.0.0.1'" in network_script
        assert "-ServerAddresses '127.0.0.1'" in network_script
        assert "-NoRebootOnCompletion" in scripts[index_of("Install-ADDSForest")]

    def test_existing_dc_skips_promotion(self, mock_runner):
        mock_runner.run_in_vm.side_effect = guest_responder({
            "DomainRole": ps_result("True"),
            "DNSRoot": ps_result("lab.local"),
            "Get-ADOrganizationalUnit": ps_result("True"),
        })

        with mock.patch("hybridlab.domain_controller.wait") as mock_wait:
            DomainControllerConfigurator(mock_runner).configure()

        scripts = "\n".join(scripts_run(mock_runner))
        assert "Install-ADDSForest" not in scripts
        assert "Install-WindowsFeature" not in scripts
        assert "New-HciAdObjectsPreCreation" not in scripts
        mock_wait.assert_not_called()

    def test_failed_promotion_stops_before_reboot(self, mock_runner):
        def failing_forest():
            raise PowerShellError(
                "Verification of prerequisites for Domain Controller promotion failed", returncode=1
            )

        mock_runner.run_in_vm.side_effect = guest_responder({
            "DomainRole": ps_result("", returncode=1),
            "Install-ADDSForest": failing_forest,
        })

        with mock.patch("hybridlab.domain_controller.wait") as mock_wait:
            with pytest.raises(PowerShellError, match="Verification of prerequisites"):
                DomainControllerConfigurator(mock_runner).configure()

        mock_wait.assert_not_called()
        scripts = "\n".join(scripts_run(mock_runner))
        assert "Restart-VM" not in scripts
        assert "DNSRoot" not in scripts
