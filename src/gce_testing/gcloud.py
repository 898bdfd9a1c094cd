"""gcloud CLI invocation.

All provisioning goes through the gcloud binary rather than the Compute API
so that every operation can be reproduced by hand from the logged command.

The configuration directory is carried in a context variable: code running
under ``with_gcloud_config_dir(path)`` (including asyncio tasks spawned from
it) invokes gcloud with ``CLOUDSDK_CONFIG=path``. This lets concurrent tests
use different credentials without touching the process environment.
"""

from __future__ import annotations

import contextlib
import contextvars
import os
import shlex
from typing import TYPE_CHECKING

from gce_testing._logging import get_logger
from gce_testing.command import run_command
from gce_testing.exceptions import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from gce_testing.models import CommandOutput
    from gce_testing.settings import Settings

logger = get_logger(__name__)

_gcloud_config_dir: contextvars.ContextVar[str | None] = contextvars.ContextVar("gcloud_config_dir", default=None)


@contextlib.contextmanager
def with_gcloud_config_dir(directory: str | os.PathLike[str]) -> Iterator[None]:
    """Run gcloud with CLOUDSDK_CONFIG=directory inside this context."""
    token = _gcloud_config_dir.set(os.fspath(directory))
    try:
        yield
    finally:
        _gcloud_config_dir.reset(token)


def gcloud_env(settings: Settings) -> dict[str, str]:
    """Environment overrides for a gcloud invocation."""
    env = {"CLOUDSDK_CORE_DISABLE_PROMPTS": "1"}
    if settings.cloudsdk_python:
        env["CLOUDSDK_PYTHON"] = settings.cloudsdk_python
    if (config_dir := _gcloud_config_dir.get()) is not None:
        env["CLOUDSDK_CONFIG"] = config_dir
    return env


async def run_gcloud(
    settings: Settings,
    args: Sequence[str],
    *,
    stdin: str | None = None,
    timeout: float | None = None,
) -> CommandOutput:
    """Invoke gcloud and wait until it finishes.

    Args:
        settings: Supplies the gcloud binary and interpreter
        args: Arguments after `gcloud`
        stdin: Text piped to gcloud
        timeout: Seconds before gcloud is terminated

    Raises:
        CommandError: gcloud exited non-zero (message includes its output)
    """
    logger.info(f"Running command: gcloud {shlex.join(args)}")
    return await run_command(
        [settings.gcloud_bin, *args],
        stdin=stdin,
        env=gcloud_env(settings),
        timeout=timeout,
    )


async def get_gcloud_config_dir(settings: Settings) -> str:
    """Configuration directory gcloud would use in the current context."""
    output = await run_gcloud(settings, ["info", "--format=value[terminator=''](config.paths.global_config_dir)"])
    return output.stdout


def _with_trailing_dot(directory: str | os.PathLike[str]) -> str:
    """`dir/.` so that `cp -r` copies the contents rather than the directory."""
    return os.path.join(os.path.normpath(os.fspath(directory)), ".")


async def setup_gcloud_config_dir(settings: Settings, directory: str | os.PathLike[str]) -> None:
    """Seed `directory` with a copy of the current gcloud configuration.

    Use with with_gcloud_config_dir() to give a test its own gcloud state
    (for example a different active account) without affecting other tests.
    """
    current = await get_gcloud_config_dir(settings)
    await run_command(["cp", "-r", _with_trailing_dot(current), _with_trailing_dot(directory)])


def image_flags(image_spec: str) -> list[str]:
    """gcloud flags selecting the boot image.

    `project:family` selects the latest image of a family,
    `project=image` selects one specific image.

    Raises:
        ConfigurationError: Neither delimiter is present
    """
    if ":" in image_spec:
        project, family = image_spec.split(":", 1)
        return [f"--image-project={project}", f"--image-family={family}"]
    if "=" in image_spec:
        project, image = image_spec.split("=", 1)
        return [f"--image-project={project}", f"--image={image}"]
    raise ConfigurationError(
        f"image spec {image_spec!r} must be <project>:<family> or <project>=<image>",
        context={"image_spec": image_spec},
    )
