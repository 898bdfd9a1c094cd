"""Remote execution on test VMs over ssh.

Linux guests get bash commands; Windows guests get PowerShell, passed as a
base64 UTF-16LE -EncodedCommand so quoting survives the trip through the
Windows OpenSSH server. Plain ssh with a per-run key pair is used instead of
`gcloud compute ssh`, which is unreliable when run concurrently with itself.

Files too large for a command line travel through the transfer bucket:
uploaded with the Cloud Storage client, pulled onto the VM with
Read-GcsObject (Windows) or gsutil (Linux), then deleted from the bucket.
"""

from __future__ import annotations

import asyncio
import base64
import posixpath
import uuid
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any

from gce_testing import constants
from gce_testing._logging import get_logger
from gce_testing.command import run_command
from gce_testing.exceptions import CommandError, ConfigurationError, RemoteCommandError, combine_errors
from gce_testing.guest_os import WINDOWS_OS_ID, is_arm, is_suse
from gce_testing.models import VM, CommandOutput, GuestOS

if TYPE_CHECKING:
    from gce_testing.registry import ServiceRegistry

logger = get_logger(__name__)

GCLOUD_CLI_VERSION = "453.0.0"


def wrap_powershell_command(command: str) -> str:
    """Encode a PowerShell command for `powershell -EncodedCommand`."""
    encoded = base64.b64encode(command.encode("utf-16-le")).decode("ascii")
    return f'powershell -NonInteractive -EncodedCommand "{encoded}"'


def _single_quote_bash(value: str) -> str:
    return "'" + value.replace("'", "'\\''") + "'"


def _single_quote_powershell(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def env_to_bash_prefix(env: Mapping[str, str]) -> str:
    """`VAR1='foo' VAR2='bar' ` for prefixing a bash command."""
    return "".join(f"{key}={_single_quote_bash(value)} " for key, value in env.items())


def env_to_powershell_prefix(env: Mapping[str, str]) -> str:
    """`$env:VAR1='foo'\\n$env:VAR2='bar'\\n` for prefixing a PowerShell command."""
    return "".join(f"$env:{key}={_single_quote_powershell(value)}\n" for key, value in env.items())


def _quote_flags(flags: Sequence[str], quote: Any) -> str:
    return " ".join(quote(flag) for flag in flags)


def _gsutil_install_command(vm: VM) -> str:
    """Shell script installing gsutil from the gcloud CLI tarball (SUSE only)."""
    arch = "arm" if is_arm(vm.image_spec) else "x86_64"
    package = f"google-cloud-cli-{GCLOUD_CLI_VERSION}-linux-{arch}.tar.gz"
    install_from_tarball = f"""
curl -O https://dl.google.com/dl/cloudsdk/channels/rapid/downloads/{package}
INSTALL_DIR="$(readlink --canonicalize .)"
(
	INSTALL_LOG="$(mktemp)"
	# The installer is noisy; only show its output on failure.
	sudo tar -xf {package} -C ${{INSTALL_DIR}}
	sudo --preserve-env ${{INSTALL_DIR}}/google-cloud-sdk/install.sh -q &>"${{INSTALL_LOG}}" || \\
		EXIT_CODE=$?
	if [[ "${{EXIT_CODE-}}" ]]; then
		cat "${{INSTALL_LOG}}"
		exit "${{EXIT_CODE}}"
	fi
)"""
    if not is_arm(vm.image_spec):
        return f"""set -ex
{install_from_tarball}

sudo ${{INSTALL_DIR}}/google-cloud-sdk/bin/gcloud components update --quiet

sudo ln -s ${{INSTALL_DIR}}/google-cloud-sdk/bin/gsutil /usr/bin/gsutil
"""

    # ARM tarballs carry no bundled Python and the CLI needs >= 3.8, while
    # SLES 15 / Leap ship 3.6 as python3.
    repo_setup = "sudo zypper --non-interactive refresh"
    if "sles-15" in vm.image_spec:
        repo_setup = """sudo zypper --non-interactive addrepo -g -t YUM https://us-yum.pkg.dev/projects/cloud-ops-agents-artifacts-dev/google-cloud-monitoring-sles15-aarch64-test-vendor test-vendor
sudo rpm --import https://packages.cloud.google.com/yum/doc/yum-key.gpg https://packages.cloud.google.com/yum/doc/rpm-package-key.gpg
sudo zypper --non-interactive refresh test-vendor"""
    return f"""set -ex
{repo_setup}
sudo zypper --non-interactive install python311 python3-certifi

export CLOUDSDK_PYTHON=/usr/bin/python3.11
{install_from_tarball}

sudo CLOUDSDK_PYTHON=/usr/bin/python3.11 ${{INSTALL_DIR}}/google-cloud-sdk/bin/gcloud components update --quiet

sudo tee /usr/bin/gsutil > /dev/null << EOF
#!/usr/bin/env bash
CLOUDSDK_PYTHON=/usr/bin/python3.11 ${{INSTALL_DIR}}/google-cloud-sdk/bin/gsutil "\\$@"
EOF
sudo chmod a+x /usr/bin/gsutil
"""


class RemoteExecutor:
    """Runs commands, scripts and file transfers on test VMs.

    Example:
        ```python
        executor = RemoteExecutor(registry)
        output = await executor.run_remotely(vm, "cat /etc/os-release")
        await executor.upload_content(vm, config_yaml, "/etc/google-cloud-ops-agent/config.yaml")
        ```
    """

    def __init__(self, registry: ServiceRegistry) -> None:
        self._registry = registry

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def ssh_args(self, vm: VM, command: str) -> list[str]:
        """argv for running `command` on `vm` (already wrapped for Windows)."""
        if vm.platform.is_windows:
            command = wrap_powershell_command(command)
        return [
            "ssh",
            f"{constants.SSH_USER_NAME}@{vm.ip_address}",
            f"-oIdentityFile={self._registry.private_key_file}",
            *constants.SSH_OPTIONS,
            command,
        ]

    async def run_remotely(
        self,
        vm: VM,
        command: str,
        *,
        stdin: str | None = None,
        timeout: float | None = None,
    ) -> CommandOutput:
        """Run a shell (Linux) or PowerShell (Windows) command on `vm`.

        For long commands, use run_script_remotely() instead: PowerShell
        rejects an -EncodedCommand that is too long.

        Raises:
            RemoteCommandError: The command (or ssh) failed; carries its output
        """
        logger.info(f"Running command remotely: {command}", extra={"vm": vm.name})
        try:
            return await run_command(self.ssh_args(vm, command), stdin=stdin, timeout=timeout)
        except CommandError as e:
            raise RemoteCommandError(
                f"Command failed: {command}\n{e}",
                e.output,
                exit_code=e.exit_code,
                context={"vm": vm.name, "command": command},
            ) from e

    async def run_script_remotely(
        self,
        vm: VM,
        script: str,
        flags: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
    ) -> CommandOutput:
        """Run a bash (Linux) or PowerShell (Windows) script on `vm`.

        Flags and environment values are single-quoted. The script gets a
        UUID file name so concurrent calls on one VM do not collide.

        PowerShell scripts should start with `$ErrorActionPreference = 'Stop'`;
        `powershell -File` otherwise drops some errors.
        """
        env = env or {}
        if vm.platform.is_windows:
            script_path = f"C:\\{uuid.uuid4()}.ps1"
            await self.upload_content(vm, script, script_path)
            command = " ".join(
                part for part in ("powershell -File", script_path, _quote_flags(flags, _single_quote_powershell)) if part
            )
            return await self.run_remotely(vm, env_to_powershell_prefix(env) + command)

        script_path = f"{uuid.uuid4()}.sh"
        command = f"cat - > {script_path} && sudo {env_to_bash_prefix(env)}bash -x {script_path}"
        if flags:
            command += " " + _quote_flags(flags, _single_quote_bash)
        return await self.run_remotely(vm, command, stdin=script)

    async def get_os(self, vm: VM) -> GuestOS:
        """ID from /etc/os-release, or "windows"."""
        if vm.platform.is_windows:
            return GuestOS(id=WINDOWS_OS_ID)
        output = await self.run_remotely(vm, ". /etc/os-release && echo -n $ID")
        return GuestOS(id=output.stdout)

    async def set_environment_variables(self, vm: VM, env: Mapping[str, str]) -> None:
        """Set environment variables on `vm`.

        Windows: machine-wide via `setx /M`, visible to every new process.
        Linux: systemd drop-ins for the agent services only.
        """
        if vm.platform.is_windows:
            for key, value in env.items():
                await self.run_remotely(vm, f'setx {key} "{value}" /M')
            return

        # Newlines stay escaped for `echo -e`.
        override = "[Service]\\n" + "".join(f'Environment="{key}={value}"\\n' for key, value in env.items())
        for service in constants.AGENT_SERVICES:
            directory = f"/etc/systemd/system/{service}.service.d"
            await self.run_remotely(
                vm, f"sudo mkdir -p {directory} && echo -e '{override}' | sudo tee {directory}/override.conf"
            )
        await self.run_remotely(vm, "sudo systemctl daemon-reload")

    async def install_gsutil_if_needed(self, vm: VM) -> None:
        """Make `gsutil` available on a Linux guest.

        Only SUSE images lack it; on anything else a missing gsutil is a
        ConfigurationError.
        """
        if vm.platform.is_windows:
            return
        try:
            await self.run_remotely(vm, "sudo gsutil --version")
            return
        except RemoteCommandError:
            logger.info("gsutil not found, installing it...", extra={"vm": vm.name})

        if not is_suse(vm.os.id) or ("sles-12" in vm.image_spec and is_arm(vm.image_spec)):
            raise ConfigurationError(
                f"this test does not know how to install gsutil on image spec: {vm.image_spec}",
                context={"image_spec": vm.image_spec, "os": vm.os.id},
            )
        await self.run_remotely(vm, _gsutil_install_command(vm))

    # -------------------------------------------------------------------------
    # File transfer
    # -------------------------------------------------------------------------

    def _object_name(self, vm: VM, remote_path: str) -> str:
        return posixpath.normpath(f"{vm.name}/{remote_path.lstrip('/')}")

    async def _delete_object(self, blob: Any) -> BaseException | None:
        try:
            await asyncio.to_thread(blob.delete)
        except Exception as e:
            logger.warning(f"Cleanup of transfer object {blob.name} failed: {e}")
            return e
        return None

    async def upload_content(self, vm: VM, content: str | bytes, remote_path: str) -> None:
        """Write `content` to `remote_path` on `vm` through the transfer bucket.

        The local credentials must be able to write to the bucket and the
        VM's service account must be able to read from it. The bucket object
        is deleted afterwards whether or not the transfer succeeded; a failed
        delete is reported together with any transfer failure.
        """
        bucket_name = self._registry.settings.transfers_bucket
        object_name = self._object_name(vm, remote_path)
        blob = self._registry.storage_client.bucket(bucket_name).blob(object_name)
        await asyncio.to_thread(blob.upload_from_string, content)

        try:
            if vm.platform.is_windows:
                await self.run_remotely(
                    vm,
                    f'New-Item -Path "{remote_path}" -ItemType File -Force ;'
                    f'Read-GcsObject -Force -Bucket "{bucket_name}" -ObjectName "{object_name}" -OutFile "{remote_path}"',
                )
            else:
                await self.install_gsutil_if_needed(vm)
                await self.run_remotely(vm, f"sudo gsutil cp 'gs://{bucket_name}/{object_name}' '{remote_path}'")
        except BaseException as e:
            delete_error = await self._delete_object(blob)
            if delete_error is None or not isinstance(e, Exception):
                raise
            raise combine_errors(e, delete_error) from e

        delete_error = await self._delete_object(blob)
        if delete_error is not None:
            raise delete_error

    async def retrieve_content(self, vm: VM, remote_path: str) -> str:
        """Contents of `remote_path` on `vm`."""
        if vm.platform.is_windows:
            output = await self.run_remotely(vm, f"Get-Content -Path '{remote_path}' -Raw")
        else:
            output = await self.run_remotely(vm, f"sudo cat {remote_path}")
        return output.stdout
