"""VM lifecycle: create, wait for readiness, remediate, delete.

A create attempt moves through Provisioning (gcloud create) and
ReadinessCheck (ssh polling plus per-distro remediation) to Ready. Once the
instance exists, any failure in the attempt, including the attempt running
out of time, deletes it again before the error is reported: a create call
returns a VM or raises, never both.

Attempts are retried under a fixed one minute backoff within an overall
budget of three attempt deadlines. Each attempt builds a fresh name and
picks the next zone, so a zone out of capacity does not fail the test.

Deletion runs in its own task with its own deadline. It is shielded from the
caller's cancellation: a test that times out still cleans up its VM.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from typing import TYPE_CHECKING, TypeVar

from gce_testing import classify, constants
from gce_testing._logging import get_logger
from gce_testing.exceptions import (
    CommandError,
    ConfigurationError,
    ExhaustedRetriesError,
    HarnessError,
    PermanentError,
    RemoteCommandError,
    RetriableBackendError,
    combine_errors,
)
from gce_testing.gcloud import image_flags, run_gcloud
from gce_testing.guest_os import (
    DLVM_GPU_DEBIAN_IMAGE,
    GuestPlatform,
    is_arm,
    is_debian_based,
    is_dlvm,
    is_rhel7_sap_ha,
    is_sles,
    is_suse,
    is_windows,
)
from gce_testing.models import (
    VM,
    CommandOutput,
    ManagedInstanceGroupVM,
    VMOptions,
    extract_id,
    extract_ip_address,
    extract_metadata,
    map_to_comma_separated_list,
)
from gce_testing.remote import RemoteExecutor
from gce_testing.retry import RetryPolicy, retry_async

if TYPE_CHECKING:
    from gce_testing.registry import ServiceRegistry
    from gce_testing.settings import Settings

logger = get_logger(__name__)

VMT = TypeVar("VMT", bound=VM)

# Leaves room for the -mig/-tmpl suffixes within the 63 character limit.
MIG_NAME_SUFFIX_LENGTH = 30

RESERVED_METADATA_KEYS: dict[str, str] = {
    "enable-oslogin": "the 'enable-oslogin' metadata key is reserved for framework use",
    "ssh-keys": "the 'ssh-keys' metadata key is reserved for framework use",
}
RESERVED_WINDOWS_METADATA_KEYS: dict[str, str] = {
    "sysprep-specialize-script-cmd": (
        "you cannot pass a sysprep script for Windows instances because they are needed to enable ssh-ing. "
        "Instead, wait for the instance to be ready and then run things with run_remotely() or run_script_remotely()"
    ),
    "enable-windows-ssh": "the 'enable-windows-ssh' metadata key is reserved for framework use",
}
RESERVED_LINUX_METADATA_KEYS: dict[str, str] = {
    "startup-script": (
        "the 'startup-script' metadata key is reserved for future use. "
        "Instead, wait for the instance to be ready and then run things with run_remotely() or run_script_remotely()"
    ),
}

# Deep Learning VM images reset the test user's home directory after boot,
# which breaks ssh until the key file is recreated.
DLVM_STARTUP_SCRIPT = f"""
#!/bin/bash
# Give time for the guest agent and jupyter stuff to finish modifying
# /etc/passwd and test_user home directory
sleep 120
HOMEDIR=/home/{constants.SSH_USER_NAME}
SSHFILE=$HOMEDIR/.ssh/authorized_keys
if [ ! -f "$SSHFILE" ]; then
  sudo mkdir -p "$HOMEDIR/.ssh"
  sudo touch "$SSHFILE"
fi
sudo chown -R {constants.SSH_USER_NAME}:{constants.SSH_USER_NAME} "$HOMEDIR"
sudo chmod 600 "$SSHFILE\""""


def _is_command_failure(err: BaseException) -> bool:
    return isinstance(err, CommandError)


def _is_not_permanent(err: BaseException) -> bool:
    return not isinstance(err, PermanentError)


def instance_log_url(vm: VM) -> str:
    """Cloud Console link to the instance's logs."""
    return (
        "https://console.cloud.google.com/logs/viewer"
        f"?resource=gce_instance%2Finstance_id%2F{vm.id}&project={vm.project}"
    )


async def _run_shielded(operation: Awaitable[None], description: str) -> None:
    """Run `operation` to completion even if the caller is cancelled.

    A cancelled caller waits for the operation to finish, then sees the
    cancellation.
    """
    task = asyncio.ensure_future(operation)
    try:
        await asyncio.shield(task)
    except asyncio.CancelledError:
        if not task.done():
            logger.warning(f"Cancelled during {description}; letting it finish first")
            await asyncio.wait({task})
        if not task.cancelled() and (error := task.exception()) is not None:
            logger.error(f"{description} failed after cancellation: {error}")
        raise


class InstanceManager:
    """Creates, readies and deletes test VMs.

    Example:
        ```python
        manager = InstanceManager(registry)
        async with manager.setup_vm(VMOptions(image_spec="debian-cloud:debian-12")) as vm:
            await manager.executor.run_remotely(vm, "uname -a")
        ```
    """

    def __init__(self, registry: ServiceRegistry, executor: RemoteExecutor | None = None) -> None:
        self._registry = registry
        self.executor = executor or RemoteExecutor(registry)

    @property
    def _settings(self) -> Settings:
        return self._registry.settings

    async def _gcloud(self, args: Sequence[str], *, timeout: float | None = None) -> CommandOutput:
        return await run_gcloud(self._settings, args, timeout=timeout)

    # -------------------------------------------------------------------------
    # Create arguments
    # -------------------------------------------------------------------------

    def vm_from_options(self, options: VMOptions, vm_type: type[VMT] = VM, *, name: str = "") -> VMT:  # type: ignore[assignment]
        """Fill in the defaults `options` leaves open."""
        if self._settings.instance_size:
            machine_type = self._settings.instance_size
        elif options.machine_type:
            machine_type = options.machine_type
        elif is_arm(options.image_spec):
            machine_type = constants.DEFAULT_ARM_MACHINE_TYPE
        else:
            machine_type = constants.DEFAULT_MACHINE_TYPE

        return vm_type(
            name=name or options.name or self._registry.generate_vm_name(),
            project=options.project or self._registry.default_project(),
            network=self._settings.network_name or constants.DEFAULT_NETWORK,
            image_spec=options.image_spec,
            zone=options.zone or self._registry.zone_selector.next(),
            machine_type=machine_type,
        )

    async def framework_metadata(self, image_spec: str, metadata: dict[str, str]) -> dict[str, str]:
        """Caller metadata plus the keys ssh access depends on.

        Raises:
            ConfigurationError: `metadata` sets a key the harness manages
        """
        reserved = dict(RESERVED_METADATA_KEYS)
        reserved.update(RESERVED_WINDOWS_METADATA_KEYS if is_windows(image_spec) else RESERVED_LINUX_METADATA_KEYS)
        for key, message in reserved.items():
            if key in metadata:
                raise ConfigurationError(message, context={"key": key})

        # Serial port logging helps diagnose startup issues; callers may turn it off.
        result = {"serial-port-logging-enable": "true", **metadata}
        # We manage our own ssh keys, OS Login gets in the way.
        result["enable-oslogin"] = "false"
        result["ssh-keys"] = f"{constants.SSH_USER_NAME}:{await self._registry.read_public_key()}"
        if is_windows(image_spec):
            result["sysprep-specialize-script-cmd"] = "googet -noconfirm=true install google-compute-engine-ssh"
            result["enable-windows-ssh"] = "TRUE"
        elif DLVM_GPU_DEBIAN_IMAGE in image_spec:
            result["startup-script"] = DLVM_STARTUP_SCRIPT
        return result

    def framework_labels(self, labels: dict[str, str]) -> dict[str, str]:
        result = dict(labels)
        if self._settings.kokoro_build_id:
            result["kokoro_build_id"] = self._settings.kokoro_build_id
        return result

    async def additional_create_args(self, options: VMOptions) -> list[str]:
        """Flags shared by `instances create` and `instance-templates create`."""
        args = image_flags(options.image_spec)

        metadata = await self.framework_metadata(options.image_spec, options.metadata)
        if metadata:
            args.append("--metadata=" + map_to_comma_separated_list(metadata))
        labels = self.framework_labels(options.labels)
        if labels:
            args.append("--labels=" + map_to_comma_separated_list(labels))

        if self._settings.service_email:
            args.append("--service-account=" + self._settings.service_email)
        if self._settings.use_internal_ip:
            args.append("--no-address")
        if options.time_to_live:
            args.extend(
                [
                    "--max-run-duration=" + options.time_to_live,
                    "--instance-termination-action=DELETE",
                    "--provisioning-model=STANDARD",
                ]
            )
        args.extend(options.extra_create_arguments)
        return args

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    async def _cleanup_after_failure(self, delete: Callable[[VMT], Awaitable[None]], vm: VMT) -> BaseException | None:
        try:
            await delete(vm)
        except Exception as e:
            logger.error(f"Deleting {vm.name} after a failure failed too: {e}", extra={"vm": vm.name})
            return e
        return None

    async def _finish_creation(self, vm: VMT, stdout: str, deadline: float | None) -> None:
        """Parse the instance record, then wait for readiness."""
        vm.id = extract_id(stdout)
        logger.info(f"Instance Log: {instance_log_url(vm)}", extra={"vm": vm.name})
        vm.ip_address = extract_ip_address(stdout, use_internal_ip=self._settings.use_internal_ip)

        try:
            await self.describe_vm_disk(vm)
        except CommandError as e:
            logger.warning(f"Unable to retrieve information about the VM's boot disk: {e}", extra={"vm": vm.name})

        await self.verify_vm_creation(vm, deadline=deadline)

    async def _attempt_create_instance(self, options: VMOptions) -> VM:
        vm = self.vm_from_options(options)
        args = [
            # "beta" is needed for --max-run-duration.
            "beta", "compute", "instances", "create", vm.name,
            f"--project={vm.project}",
            f"--zone={vm.zone}",
            f"--machine-type={vm.machine_type}",
            f"--image-family-scope={options.image_family_scope or constants.DEFAULT_IMAGE_FAMILY_SCOPE}",
            f"--network={vm.network}",
            "--format=json",
        ]  # fmt: skip
        args.extend(await self.additional_create_args(options))

        deadline = asyncio.get_running_loop().time() + constants.VM_INIT_TIMEOUT_SECONDS
        async with asyncio.timeout_at(deadline):
            # Nothing to delete when this fails.
            output = await self._gcloud(args)

        try:
            await self._finish_creation(vm, output.stdout, deadline)
        except (Exception, asyncio.CancelledError) as e:
            delete_error = await self._cleanup_after_failure(self.delete_instance, vm)
            if delete_error is None or not isinstance(e, Exception):
                raise
            raise combine_errors(e, delete_error) from e
        return vm

    async def _attempt_create_managed_instance_group_vm(self, options: VMOptions) -> ManagedInstanceGroupVM:
        vm = self.vm_from_options(
            options,
            ManagedInstanceGroupVM,
            name=self._registry.generate_vm_name(MIG_NAME_SUFFIX_LENGTH),
        )
        template_args = [
            "beta", "compute", "instance-templates", "create", vm.instance_template_name,
            f"--project={vm.project}",
            f"--machine-type={vm.machine_type}",
            f"--network={vm.network}",
            "--format=json",
        ]  # fmt: skip
        template_args.extend(await self.additional_create_args(options))

        deadline = asyncio.get_running_loop().time() + constants.VM_INIT_TIMEOUT_SECONDS
        async with asyncio.timeout_at(deadline):
            await self._gcloud(template_args)

        group_created = False
        try:
            async with asyncio.timeout_at(deadline):
                await self._gcloud(
                    [
                        "compute", "instance-groups", "managed", "create", vm.managed_instance_group_name,
                        f"--project={vm.project}",
                        f"--zone={vm.zone}",
                        "--size=0",
                        f"--template={vm.instance_template_name}",
                        "--format=json",
                    ]  # fmt: skip
                )
                group_created = True
                await self._gcloud(
                    [
                        "compute", "instance-groups", "managed", "create-instance", vm.managed_instance_group_name,
                        f"--instance={vm.name}",
                        f"--project={vm.project}",
                        f"--zone={vm.zone}",
                        "--format=json",
                    ]  # fmt: skip
                )
                await self._gcloud(
                    [
                        "compute", "instance-groups", "managed", "wait-until", vm.managed_instance_group_name,
                        "--stable",
                        f"--timeout={constants.MIG_STABLE_TIMEOUT_SECONDS}",
                        f"--project={vm.project}",
                        f"--zone={vm.zone}",
                        "--format=json",
                    ]  # fmt: skip
                )
                output = await self._gcloud(
                    [
                        "compute", "instances", "list",
                        f"--filter=name=( '{vm.name}' ... )",
                        f"--project={vm.project}",
                        f"--zones={vm.zone}",
                        "--format=json",
                    ]  # fmt: skip
                )
            await self._finish_creation(vm, output.stdout, deadline)
        except (Exception, asyncio.CancelledError) as e:
            cleanup = self.delete_managed_instance_group_vm if group_created else self._delete_instance_template
            delete_error = await self._cleanup_after_failure(cleanup, vm)
            if delete_error is None or not isinstance(e, Exception):
                raise
            raise combine_errors(e, delete_error) from e
        return vm

    def _create_policy(self, options: VMOptions, classifier: Callable[[BaseException, str], bool]) -> RetryPolicy:
        return RetryPolicy(
            classifier=lambda e: classifier(e, options.image_spec),
            backoff_seconds=constants.VM_CREATE_BACKOFF_SECONDS,
            max_delay=constants.VM_CREATE_ATTEMPT_BUDGET * constants.VM_INIT_TIMEOUT_SECONDS,
            description=f"create VM from {options.image_spec}",
        )

    async def create_instance(self, options: VMOptions) -> VM:
        """Create a VM and wait until it is reachable over ssh.

        Returns a ready VM or raises, never both. The caller owns deleting
        the returned VM; setup_vm() does this automatically.

        Raises:
            ConfigurationError: Invalid options (never retried)
            ExhaustedRetriesError: Every attempt failed with a retriable error
            HarnessError: A permanent failure, unchanged
        """
        vm = await retry_async(
            lambda: self._attempt_create_instance(options),
            self._create_policy(options, classify.should_retry_create_vm),
        )
        logger.info(f"VM is ready: {vm!r}", extra={"vm": vm.name})
        return vm

    async def create_managed_instance_group_vm(self, options: VMOptions) -> ManagedInstanceGroupVM:
        """Create a one-instance managed instance group and wait for its VM.

        Same contract as create_instance(); the instance template and the
        group are deleted together with the VM.
        """
        vm = await retry_async(
            lambda: self._attempt_create_managed_instance_group_vm(options),
            self._create_policy(options, classify.should_retry_create_mig),
        )
        logger.info(f"Managed Instance Group VM is ready: {vm!r}", extra={"vm": vm.name})
        return vm

    @contextlib.asynccontextmanager
    async def setup_vm(self, options: VMOptions) -> AsyncIterator[VM]:
        """Create a VM for the duration of the block, then delete it."""
        vm = await self.create_instance(options)
        async with self._deleted_on_exit(vm, self.delete_instance):
            yield vm

    @contextlib.asynccontextmanager
    async def setup_managed_instance_group_vm(self, options: VMOptions) -> AsyncIterator[ManagedInstanceGroupVM]:
        """Create a managed instance group VM for the duration of the block."""
        vm = await self.create_managed_instance_group_vm(options)
        async with self._deleted_on_exit(vm, self.delete_managed_instance_group_vm):
            yield vm

    @contextlib.asynccontextmanager
    async def _deleted_on_exit(self, vm: VMT, delete: Callable[[VMT], Awaitable[None]]) -> AsyncIterator[None]:
        logger.info(f"Instance Log: {instance_log_url(vm)}", extra={"vm": vm.name})
        try:
            yield
        except (Exception, asyncio.CancelledError) as e:
            delete_error = await self._cleanup_after_failure(delete, vm)
            if delete_error is None or not isinstance(e, Exception):
                raise
            raise combine_errors(e, delete_error) from e
        await delete(vm)

    # -------------------------------------------------------------------------
    # Readiness
    # -------------------------------------------------------------------------

    def _readiness_budget(self, deadline: float | None) -> float | None:
        if deadline is None:
            return None
        return max(deadline - asyncio.get_running_loop().time(), 0.0)

    async def wait_for_start(self, vm: VM, *, max_delay: float | None = None) -> None:
        """Wait until `vm` accepts commands over ssh."""
        match vm.platform:
            case GuestPlatform.WINDOWS | GuestPlatform.WINDOWS_CORE:
                await self._wait_for_start_windows(vm, max_delay)
            case GuestPlatform.LINUX | GuestPlatform.SUSE:
                await self._wait_for_start_linux(vm, max_delay)

    async def _wait_for_start_windows(self, vm: VM, max_delay: float | None) -> None:
        # Any command will do; Windows has no equivalent of is-system-running.
        policy = RetryPolicy(
            classifier=_is_not_permanent,
            backoff_seconds=constants.VM_INIT_BACKOFF_SECONDS,
            max_delay=max_delay,
            attempt_timeout=constants.VM_INIT_POKE_SSH_TIMEOUT_SECONDS,
            description=f"wait for {vm.name} to accept ssh",
        )
        try:
            await retry_async(lambda: self.executor.run_remotely(vm, "'foo'"), policy)
        except ExhaustedRetriesError as e:
            raise HarnessError(
                f"{classify.WINDOWS_STARTUP_FAILED_MESSAGE} err={e.cause}",
                context={"vm": vm.name, "attempts": e.attempts},
            ) from e

    async def _poke_system_state(self, vm: VM) -> None:
        """Succeeds once systemd reports the system as up.

        `is-system-running` exits non-zero for "degraded", so the state is
        read from the failed command's output too.
        """
        try:
            output = await self.executor.run_remotely(
                vm, "systemctl is-system-running", timeout=constants.VM_INIT_POKE_SSH_TIMEOUT_SECONDS
            )
        except RemoteCommandError as e:
            if e.output.stdout.strip() != "degraded":
                raise
            output = e.output

        state = output.stdout.strip()
        if state == "degraded":
            # Some units failing is fine for our purposes; log them for debugging.
            logger.info(f"System is degraded, continuing anyway: {state}", extra={"vm": vm.name})
            try:
                await self.executor.run_remotely(vm, "systemctl --failed")
            except RemoteCommandError as e:
                logger.warning(f"Could not list failed units: {e}", extra={"vm": vm.name})
            return
        if state != "running":
            raise RetriableBackendError(f"system is not up yet: {state!r}", context={"vm": vm.name})

    async def _wait_for_start_linux(self, vm: VM, max_delay: float | None) -> None:
        max_attempts = None
        if vm.platform is GuestPlatform.SUSE:
            # SUSE sometimes never finishes booting; a fresh VM is faster than waiting.
            max_attempts = constants.SUSE_STARTUP_MAX_ATTEMPTS

        policy = RetryPolicy(
            classifier=_is_not_permanent,
            backoff_seconds=constants.VM_INIT_BACKOFF_SECONDS,
            max_attempts=max_attempts,
            max_delay=max_delay,
            description=f"wait for {vm.name} to boot",
        )
        try:
            await retry_async(lambda: self._poke_system_state(vm), policy)
        except ExhaustedRetriesError as e:
            raise HarnessError(
                f"{classify.STARTUP_FAILED_MESSAGE}. Last err={e.cause}",
                context={"vm": vm.name, "attempts": e.attempts},
            ) from e

        if vm.platform is GuestPlatform.SUSE:
            # sudo on fresh SUSE VMs fails until guest agent setup settles.
            await asyncio.sleep(constants.SLES_STARTUP_DELAY_SECONDS)
            policy = RetryPolicy(
                classifier=_is_command_failure,
                backoff_seconds=constants.SLES_STARTUP_SUDO_DELAY_SECONDS,
                max_attempts=constants.SLES_STARTUP_SUDO_MAX_ATTEMPTS,
                description=f"sudo on {vm.name}",
            )
            try:
                await retry_async(lambda: self.executor.run_remotely(vm, "sudo ls /root"), policy)
            except ExhaustedRetriesError as e:
                raise HarnessError(f"exceeded retries trying to get sudo: {e.cause}", context={"vm": vm.name}) from e

    async def _log_remote_file(self, vm: VM, path: str) -> None:
        try:
            output = await self.executor.run_remotely(vm, f"sudo cat {path}")
        except RemoteCommandError as e:
            logger.warning(f"Could not read {path}: {e}", extra={"vm": vm.name})
            return
        logger.info(f"{path}:\n{output.stdout}", extra={"vm": vm.name})

    async def prepare_sles(self, vm: VM) -> None:
        """Register a SLES VM with the SUSE Customer Center and refresh zypper."""
        register = RetryPolicy(
            classifier=_is_command_failure,
            backoff_seconds=constants.SLES_REGISTER_BACKOFF_SECONDS,
            max_attempts=constants.SLES_REGISTER_ATTEMPTS,
            description="registercloudguest",
        )
        try:
            await retry_async(
                lambda: self.executor.run_remotely(vm, "sudo /usr/sbin/registercloudguest --force"), register
            )
        except HarnessError as e:
            await self._log_remote_file(vm, "/var/log/cloudregister")
            raise HarnessError(f"error running registercloudguest: {e}", context={"vm": vm.name}) from e

        # Refresh fails transiently while the registration propagates.
        refresh = RetryPolicy(
            classifier=_is_command_failure,
            backoff_seconds=constants.SLES_ZYPPER_BACKOFF_SECONDS,
            max_attempts=constants.SLES_ZYPPER_ATTEMPTS,
            description="zypper refresh",
        )
        try:
            await retry_async(
                lambda: self.executor.run_remotely(
                    vm,
                    "sudo zypper --non-interactive --gpg-auto-import-keys refresh && "
                    "sudo zypper --non-interactive install --force coreutils",
                ),
                refresh,
            )
        except HarnessError:
            await self._log_remote_file(vm, "/var/log/zypper.log")
            raise

    async def verify_vm_creation(self, vm: VM, *, deadline: float | None = None) -> None:
        """Wait for readiness, detect the OS and apply per-distro fixes.

        Args:
            vm: Freshly provisioned VM
            deadline: Event loop time by which the attempt must finish
        """
        await self.wait_for_start(vm, max_delay=self._readiness_budget(deadline))

        async with asyncio.timeout_at(deadline):
            vm.os = await self.executor.get_os(vm)

            if is_suse(vm.os.id):
                # Zypper downloads give up too easily on flaky mirrors.
                await self.executor.run_remotely(
                    vm,
                    "sudo sed -i -E 's/.*download.max_silent_tries.*/download.max_silent_tries = 5/g' "
                    "/etc/zypp/zypp.conf",
                )
            if is_sles(vm.os.id):
                try:
                    await self.prepare_sles(vm)
                except HarnessError as e:
                    raise HarnessError(f"{classify.PREPARE_SLES_MESSAGE}: {e}", context={"vm": vm.name}) from e
            if is_suse(vm.os.id):
                # Wait for the zypper lock held by background refreshes instead of failing.
                await self.executor.run_remotely(vm, "echo 'ZYPP_LOCK_TIMEOUT=300' | sudo tee -a /etc/environment")

            if is_rhel7_sap_ha(vm.image_spec):
                await self.executor.run_remotely(
                    vm,
                    "sudo yum -y --disablerepo=rhui-rhel*-7-* install yum-utils && "
                    'sudo yum-config-manager --disable "rhui-rhel*-7-*"',
                )

            if is_dlvm(vm.image_spec):
                # jupyter holds the apt lock on DLVM images.
                await self.executor.run_remotely(vm, "sudo service jupyter stop || true")
                # bullseye-backports no longer resolves.
                await self.executor.run_remotely(
                    vm,
                    "sudo sed --in-place --regexp-extended 's/deb[^ ]* [^ ]+ bullseye-backports .*//' "
                    "/etc/apt/sources.list",
                )

            if is_debian_based(vm.image_spec):
                # Wait for the dpkg lock held by unattended-upgrades instead of failing.
                await self.executor.run_remotely(
                    vm, "echo 'DPkg::Lock::Timeout=300' | sudo tee /etc/dpkg/dpkg.cfg.d/cache-lock-timeout.cfg"
                )

    # -------------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------------

    async def _delete_with_retries(self, args: Sequence[str], description: str) -> None:
        attempts = 0

        async def attempt() -> None:
            nonlocal attempts
            attempts += 1
            try:
                await self._gcloud(args)
            except CommandError as e:
                # An earlier attempt may have deleted it before failing to report back.
                if attempts > 1 and classify.is_not_found(e):
                    logger.info(f"{description}: already gone after {attempts} attempts")
                    return
                raise

        policy = RetryPolicy(
            classifier=classify.should_retry_delete,
            backoff_seconds=constants.DELETE_BACKOFF_SECONDS,
            max_attempts=constants.DELETE_MAX_ATTEMPTS,
            max_delay=constants.DELETE_TIMEOUT_SECONDS,
            description=description,
        )
        await retry_async(attempt, policy)

    async def delete_instance(self, vm: VM) -> None:
        """Delete `vm`. Does nothing if it was already deleted.

        Runs to completion even if the caller is cancelled.
        """
        if vm.already_deleted:
            logger.info(f"VM {vm.name} was already deleted, skipping delete.", extra={"vm": vm.name})
            return

        description = f"delete VM {vm.name}"

        async def delete() -> None:
            await self._delete_with_retries(
                ["compute", "instances", "delete", f"--project={vm.project}", f"--zone={vm.zone}", vm.name],
                description,
            )
            vm.already_deleted = True

        await _run_shielded(delete(), description)

    async def _delete_template_with_retries(self, vm: ManagedInstanceGroupVM) -> None:
        await self._delete_with_retries(
            ["compute", "instance-templates", "delete", vm.instance_template_name, f"--project={vm.project}"],
            f"delete instance template {vm.instance_template_name}",
        )

    async def _delete_instance_template(self, vm: ManagedInstanceGroupVM) -> None:
        await _run_shielded(
            self._delete_template_with_retries(vm), f"delete instance template {vm.instance_template_name}"
        )

    async def delete_managed_instance_group_vm(self, vm: ManagedInstanceGroupVM) -> None:
        """Delete the group (which owns the VM), then its instance template.

        Both deletes run to completion even if the caller is cancelled.
        """
        if vm.already_deleted:
            logger.info(
                f"Managed Instance Group {vm.name} was already deleted, skipping delete.", extra={"vm": vm.name}
            )
            return

        description = f"delete managed instance group {vm.managed_instance_group_name}"

        async def delete() -> None:
            await self._delete_with_retries(
                [
                    "compute", "instance-groups", "managed", "delete", vm.managed_instance_group_name,
                    f"--project={vm.project}",
                    f"--zone={vm.zone}",
                ],  # fmt: skip
                description,
            )
            await self._delete_template_with_retries(vm)
            vm.already_deleted = True

        await _run_shielded(delete(), description)

    # -------------------------------------------------------------------------
    # Start / Stop
    # -------------------------------------------------------------------------

    async def stop_instance(self, vm: VM) -> CommandOutput:
        return await self._gcloud(
            ["compute", "instances", "stop", f"--project={vm.project}", f"--zone={vm.zone}", vm.name]
        )

    async def start_instance(self, vm: VM) -> None:
        """Start a stopped VM and wait until it accepts ssh again.

        The external IP usually changes, so `vm.ip_address` is refreshed.
        Starting and readiness share one START_TIMEOUT_SECONDS budget.
        """
        deadline = asyncio.get_running_loop().time() + constants.START_TIMEOUT_SECONDS
        policy = RetryPolicy(
            classifier=classify.should_retry_start,
            backoff_seconds=constants.START_BACKOFF_SECONDS,
            max_delay=constants.START_TIMEOUT_SECONDS,
            description=f"start VM {vm.name}",
        )
        output = await retry_async(
            lambda: self._gcloud(
                [
                    "compute", "instances", "start",
                    f"--project={vm.project}",
                    f"--zone={vm.zone}",
                    vm.name,
                    "--format=json",
                ]  # fmt: skip
            ),
            policy,
        )
        vm.ip_address = extract_ip_address(output.stdout, use_internal_ip=self._settings.use_internal_ip)
        await self.wait_for_start(vm, max_delay=self._readiness_budget(deadline))

    async def restart_instance(self, vm: VM) -> None:
        try:
            await self.stop_instance(vm)
        except CommandError as e:
            raise HarnessError(f"failed to stop instance: {e}", context={"vm": vm.name}) from e
        await self.start_instance(vm)

    # -------------------------------------------------------------------------
    # Inspection / Networking
    # -------------------------------------------------------------------------

    async def describe_vm_disk(self, vm: VM) -> CommandOutput:
        return await self._gcloud(
            ["compute", "disks", "describe", vm.name, f"--project={vm.project}", f"--zone={vm.zone}", "--format=json"]
        )

    async def fetch_metadata(self, vm: VM) -> dict[str, str]:
        """Current instance metadata as a key/value mapping."""
        output = await self._gcloud(
            [
                "compute", "instances", "describe", vm.name,
                f"--project={vm.project}",
                f"--zone={vm.zone}",
                "--format=json(metadata)",
            ]  # fmt: skip
        )
        return extract_metadata(output.stdout)

    async def remove_external_ip(self, vm: VM) -> None:
        await self._gcloud(
            [
                "compute", "instances", "delete-access-config",
                f"--project={vm.project}",
                f"--zone={vm.zone}",
                vm.name,
                "--access-config-name=external-nat",
            ]  # fmt: skip
        )

    async def _modify_tags(self, vm: VM, action: str, tags: Sequence[str]) -> None:
        for tag in tags:
            if "," in tag:
                raise ConfigurationError(f"Tag {tag} cannot contain comma.", context={"tag": tag})
        await self._gcloud(
            [
                "compute", "instances", action, vm.name,
                f"--zone={vm.zone}",
                f"--project={vm.project}",
                "--tags=" + ",".join(tags),
            ]  # fmt: skip
        )

    async def add_tags(self, vm: VM, tags: Sequence[str]) -> None:
        """Add network tags, e.g. DENY_EGRESS_TRAFFIC_TAG to cut off the internet."""
        await self._modify_tags(vm, "add-tags", tags)

    async def remove_tags(self, vm: VM, tags: Sequence[str]) -> None:
        await self._modify_tags(vm, "remove-tags", tags)
