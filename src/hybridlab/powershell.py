"""PowerShell execution on the Hyper-V host and inside lab guests.

Scripts are passed with -EncodedCommand (base64 of UTF-16LE), so no shell
quoting applies on either transport. Guest commands use PowerShell Direct,
which only needs the VM name and a guest credential.
"""

import base64
import json
import logging
import os
import subprocess
import textwrap
from dataclasses import dataclass
from typing import Any, List, Optional

import paramiko

from hybridlab.config import Config

logger = logging.getLogger(__name__)


class PowerShellError(RuntimeError):
    """A PowerShell script exited non-zero or timed out."""

    def __init__(self, message: str, stderr: str = "", returncode: Optional[int] = None) -> None:
        super().__init__(message)
        self.stderr = stderr
        self.returncode = returncode


@dataclass
class PowerShellResult:
    stdout: str
    stderr: str
    returncode: int

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass
class GuestCredential:
    """Credential used for PowerShell Direct into a guest."""

    user: str
    password: str

    def for_domain(self, netbios: str) -> "GuestCredential":
        if "\\" in self.user or "@" in self.user:
            return self
        return GuestCredential(user=f"{netbios}\\{self.user}", password=self.password)


def quote(value: Any) -> str:
    """Render a value as a PowerShell single-quoted literal."""
    return "'" + str(value).replace("'", "''") + "'"


def encode(script: str) -> str:
    return base64.b64encode(script.encode("utf-16-le")).decode("ascii")


def _credential_block(credential: GuestCredential) -> str:
    return (
        f"$password = ConvertTo-SecureString {quote(credential.password)} -AsPlainText -Force\n"
        f"$cred = New-Object System.Management.Automation.PSCredential({quote(credential.user)}, $password)\n"
    )


class PowerShellRunner:
    """Runs PowerShell locally or on a remote Hyper-V host over SSH."""

    def __init__(
        self,
        host: Optional[str] = None,
        ssh_user: Optional[str] = None,
        ssh_key: Optional[str] = None,
        timeout: Optional[int] = None,
    ) -> None:
        self.host = host if host is not None else Config.HYPERV_HOST
        self.ssh_user = ssh_user or Config.HYPERV_SSH_USER
        self.ssh_key = os.path.expanduser(ssh_key or Config.HYPERV_SSH_KEY_PATH)
        self.timeout = timeout or Config.POWERSHELL_TIMEOUT

    @property
    def is_remote(self) -> bool:
        return bool(self.host)

    def _command(self, script: str) -> List[str]:
        return [
            "powershell.exe",
            "-NoProfile",
            "-NonInteractive",
            "-ExecutionPolicy",
            "Bypass",
            "-EncodedCommand",
            encode("$ErrorActionPreference = 'Stop'\n$ProgressPreference = 'SilentlyContinue'\n" + script),
        ]

    def _run_local(self, command: List[str], timeout: int) -> PowerShellResult:
        try:
            result = subprocess.run(command, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired:
            raise PowerShellError(f"PowerShell timed out after {timeout}s")
        return PowerShellResult(result.stdout.strip(), result.stderr.strip(), result.returncode)

    def _run_ssh(self, command: List[str], timeout: int) -> PowerShellResult:
        ssh = paramiko.SSHClient()
        ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        ssh.connect(hostname=self.host, username=self.ssh_user, key_filename=self.ssh_key)
        try:
            stdin, stdout, stderr = ssh.exec_command(" ".join(command), timeout=timeout)
            out = stdout.read().decode().strip()
            err = stderr.read().decode().strip()
            code = stdout.channel.recv_exit_status()
        except TimeoutError:
            raise PowerShellError(f"PowerShell on {self.host} timed out after {timeout}s")
        finally:
            ssh.close()
        return PowerShellResult(out, err, code)

    def run(self, script: str, check: bool = True, timeout: Optional[int] = None) -> PowerShellResult:
        """Run a script and return its output.

        Raises:
            PowerShellError: If check is set and the script exits non-zero
        """
        script = textwrap.dedent(script).strip()
        logger.debug("PowerShell%s:\n%s", f" on {self.host}" if self.is_remote else "", script)

        command = self._command(script)
        timeout = timeout or self.timeout
        result = self._run_ssh(command, timeout) if self.is_remote else self._run_local(command, timeout)

        if check and not result.ok:
            logger.error(f"PowerShell failed ({result.returncode}): {result.stderr}")
            raise PowerShellError(
                f"PowerShell failed: {result.stderr or result.stdout}",
                stderr=result.stderr,
                returncode=result.returncode,
            )
        return result

    def run_json(self, script: str, timeout: Optional[int] = None) -> Any:
        """Run a script whose output is piped through ConvertTo-Json."""
        result = self.run(f"{textwrap.dedent(script).strip()} | ConvertTo-Json -Depth 5 -Compress", timeout=timeout)
        if not result.stdout:
            return None
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise PowerShellError(f"Unexpected PowerShell output: {result.stdout[:200]}") from e

    def _guest_script(self, vm_name: str, credential: GuestCredential, script: str) -> str:
        body = textwrap.indent(textwrap.dedent(script).strip(), "    ")
        return (
            _credential_block(credential)
            + f"Invoke-Command -VMName {quote(vm_name)} -Credential $cred -ScriptBlock {{\n"
            + "    $ErrorActionPreference = 'Stop'\n"
            + body
            + "\n}"
        )

    def run_in_vm(
        self,
        vm_name: str,
        credential: GuestCredential,
        script: str,
        check: bool = True,
        timeout: Optional[int] = None,
    ) -> PowerShellResult:
        """Run a script inside a guest through PowerShell Direct."""
        return self.run(self._guest_script(vm_name, credential, script), check=check, timeout=timeout)

    def run_in_vm_json(self, vm_name: str, credential: GuestCredential, script: str) -> Any:
        return self.run_json(self._guest_script(vm_name, credential, script))

    def copy_to_vm(self, vm_name: str, credential: GuestCredential, source: str, destination: str) -> None:
        """Copy a file from the host into a guest."""
        self.run(
            _credential_block(credential)
            + f"$session = New-PSSession -VMName {quote(vm_name)} -Credential $cred\n"
            + "try {\n"
            + f"    Invoke-Command -Session $session -ScriptBlock {{ New-Item -ItemType Directory -Force -Path (Split-Path {quote(destination)}) | Out-Null }}\n"
            + f"    Copy-Item -ToSession $session -Path {quote(source)} -Destination {quote(destination)} -Force\n"
            + "} finally {\n"
            + "    Remove-PSSession $session\n"
            + "}"
        )
