"""Domain controller configuration: networking, forest promotion, OU for the HCI deployment."""

import logging
from typing import Optional

from hybridlab.config import Config
from hybridlab.powershell import GuestCredential, PowerShellRunner, quote
from hybridlab.waits import poll, wait

logger = logging.getLogger(__name__)


def ou_distinguished_name(ou_name: str, domain_name: str) -> str:
    """
    Build the OU distinguished name for a domain.

    >>> ou_distinguished_name("AzureLocal", "hybridlab.local")
    'OU=AzureLocal,DC=hybridlab,DC=local'
    """
    parts = [p for p in domain_name.split(".") if p]
    return ",".join([f"OU={ou_name}"] + [f"DC={p}" for p in parts])


def configure_static_ip_script(ip: str, prefix_length: int, gateway: Optional[str], dns: str) -> str:
    """Guest script giving the first connected adapter a static address."""
    gateway_arg = f" -DefaultGateway {quote(gateway)}" if gateway else ""
    return f"""
    $adapter = Get-NetAdapter | Where-Object {{ $_.Status -eq 'Up' }} | Sort-Object ifIndex | Select-Object -First 1
    $current = Get-NetIPAddress -InterfaceIndex $adapter.ifIndex -AddressFamily IPv4 -ErrorAction SilentlyContinue
    if (-not ($current | Where-Object {{ $_.IPAddress -eq {quote(ip)} }})) {{
        Set-NetIPInterface -InterfaceIndex $adapter.ifIndex -Dhcp Disabled
        $current | Remove-NetIPAddress -Confirm:$false -ErrorAction SilentlyContinue
        Remove-NetRoute -InterfaceIndex $adapter.ifIndex -DestinationPrefix '0.0.0.0/0' -Confirm:$false -ErrorAction SilentlyContinue
        New-NetIPAddress -InterfaceIndex $adapter.ifIndex -IPAddress {quote(ip)} -PrefixLength {prefix_length}{gateway_arg} | Out-Null
    }}
    Set-DnsClientServerAddress -InterfaceIndex $adapter.ifIndex -ServerAddresses {quote(dns)}
    """


class DomainControllerConfigurator:
    """Turns the freshly provisioned DC VM into the lab's forest root."""

    def __init__(self, runner: Optional[PowerShellRunner] = None) -> None:
        self.runner = runner or PowerShellRunner()
        self.vm_name = Config.DC_VM_NAME
        self.local_cred = GuestCredential(Config.ADMIN_USER, Config.ADMIN_PASSWORD)
        self.domain_cred = self.local_cred.for_domain(Config.DOMAIN_NETBIOS)

    def configure_network(self) -> None:
        network = Config.network()
        print(f"🌐 Setting {self.vm_name} address to {network.dc_ip}/{network.prefix_length}")
        self.runner.run_in_vm(
            self.vm_name,
            self.local_cred,
            configure_static_ip_script(network.dc_ip, network.prefix_length, network.gateway, "127.0.0.1"),
        )

    def install_ad_role(self) -> None:
        print("📦 Installing AD Domain Services role")
        self.runner.run_in_vm(
            self.vm_name,
            self.local_cred,
            "Install-WindowsFeature -Name AD-Domain-Services -IncludeManagementTools | Out-Null",
        )

    def is_domain_controller(self) -> bool:
        """True once the guest answers to the domain credential as a DC."""
        result = self.runner.run_in_vm(
            self.vm_name,
            self.domain_cred,
            "(Get-CimInstance Win32_ComputerSystem).DomainRole -ge 4",
            check=False,
        )
        return result.ok and result.stdout.strip().lower() == "true"

    def promote(self) -> None:
        """Create the forest, then reboot the guest from the host.

        Raises:
            PowerShellError: If Install-ADDSForest fails (prerequisite check, bad password, ...)
        """
        print(f"🏰 Promoting {self.vm_name} to forest root for {Config.DOMAIN_NAME}")
        self.runner.run_in_vm(
            self.vm_name,
            self.local_cred,
            f"""
            $safeMode = ConvertTo-SecureString {quote(Config.ADMIN_PASSWORD)} -AsPlainText -Force
            Install-ADDSForest -DomainName {quote(Config.DOMAIN_NAME)} -DomainNetbiosName {quote(Config.DOMAIN_NETBIOS)} `
                -SafeModeAdministratorPassword $safeMode -InstallDns -NoRebootOnCompletion -Force `
                -WarningAction SilentlyContinue | Out-Null
            """,
        )
        print(f"🔄 Restarting {self.vm_name} to complete promotion")
        self.runner.run(f"Restart-VM -Name {quote(self.vm_name)} -Force")
        logger.info(f"Forest {Config.DOMAIN_NAME} created on {self.vm_name}, reboot issued")

    def _ad_ready(self) -> bool:
        result = self.runner.run_in_vm(
            self.vm_name,
            self.domain_cred,
            "(Get-ADDomain).DNSRoot",
            check=False,
        )
        return result.ok and result.stdout.strip().lower() == Config.DOMAIN_NAME.lower()

    def wait_for_ad(self) -> None:
        """
        Poll until Active Directory Web Services answers Get-ADDomain.

        Raises:
            RuntimeError: If AD is not ready within AD_READY_TIMEOUT
        """
        ready = poll(
            self._ad_ready,
            timeout=Config.AD_READY_TIMEOUT,
            interval=Config.AD_READY_INTERVAL,
            description=f"Waiting for Active Directory on {self.vm_name}",
        )
        if not ready:
            raise RuntimeError(f"Active Directory not ready after {Config.AD_READY_TIMEOUT}s")
        print(f"✅ Active Directory {Config.DOMAIN_NAME} is ready")

    def configure_dns_forwarder(self) -> None:
        self.runner.run_in_vm(
            self.vm_name,
            self.domain_cred,
            f"Set-DnsServerForwarder -IPAddress {quote(Config.DNS_FORWARDER)}",
        )

    def ou_exists(self, distinguished_name: str) -> bool:
        result = self.runner.run_in_vm(
            self.vm_name,
            self.domain_cred,
            f"[bool](Get-ADOrganizationalUnit -Filter \"DistinguishedName -eq '{distinguished_name}'\")",
        )
        return result.stdout.strip().lower() == "true"

    def create_deployment_ou(self) -> bool:
        """
        Create the HCI OU and LCM deployment user with the pre-creation tool.

        Returns:
            True if created, False if the OU already existed
        """
        dn = ou_distinguished_name(Config.OU_NAME, Config.DOMAIN_NAME)
        if self.ou_exists(dn):
            print(f"✅ OU {dn} already exists, skipping.")
            return False

        print(f"🗂️  Creating OU {dn} and deployment user {Config.LCM_USER!r}")
        self.runner.run_in_vm(
            self.vm_name,
            self.domain_cred,
            f"""
            Install-PackageProvider -Name NuGet -MinimumVersion 2.8.5.201 -Force | Out-Null
            if (-not (Get-Module -ListAvailable -Name AsHciADArtifactsPreCreationTool)) {{
                Install-Module -Name AsHciADArtifactsPreCreationTool -Repository PSGallery -Force
            }}
            $lcmPassword = ConvertTo-SecureString {quote(Config.LCM_PASSWORD)} -AsPlainText -Force
            $lcmCred = New-Object System.Management.Automation.PSCredential({quote(Config.LCM_USER)}, $lcmPassword)
            New-HciAdObjectsPreCreation -AzureStackLCMUserCredential $lcmCred -AsHciOUName {quote(dn)}
            """,
        )
        return True

    def configure_time(self) -> None:
        self.runner.run_in_vm(
            self.vm_name,
            self.domain_cred,
            "w32tm /config /manualpeerlist:time.windows.com /syncfromflags:manual /reliable:yes /update | Out-Null",
        )

    def configure(self) -> None:
        """Full DC configuration, safe to re-run."""
        Config.require("ADMIN_PASSWORD", "DOMAIN_NAME", "DOMAIN_NETBIOS")

        if self.is_domain_controller():
            print(f"✅ {self.vm_name} is already a domain controller for {Config.DOMAIN_NAME}")
        else:
            print("\n🌐 Step 1: Network")
            self.configure_network()
            print("\n📦 Step 2: AD DS role")
            self.install_ad_role()
            print("\n🏰 Step 3: Forest promotion")
            self.promote()
            wait(Config.DC_PROMOTION_WAIT, "Waiting for DC reboot after promotion")

        print("\n⏳ Step 4: Active Directory readiness")
        self.wait_for_ad()

        print("\n🧭 Step 5: DNS forwarder")
        self.configure_dns_forwarder()

        print("\n🗂️  Step 6: Deployment OU")
        self.create_deployment_ou()

        print("\n🕒 Step 7: Time")
        self.configure_time()

        print(f"\n✅ Domain controller {self.vm_name} configured")
