"""Runtime configuration from environment variables."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from gce_testing import constants


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    Variable names match the CI environment directly (no prefix).
    Example: ZONES=us-central1-a=2,us-central1-b USE_INTERNAL_IP=true
    """

    model_config = SettingsConfigDict(
        case_sensitive=False,
        extra="ignore",
    )

    # Placement
    project: str = ""
    zones: str = ""
    """Comma-separated zones with optional integer weights: zone1=2,zone2."""
    network_name: str = constants.DEFAULT_NETWORK

    # Networking / identity
    use_internal_ip: bool = False
    """Create VMs with --no-address and ssh to the internal IP (Cloud NAT egress)."""
    service_email: str | None = None
    instance_size: str | None = None
    """Overrides every caller-selected machine type when set."""

    # File transfer
    transfers_bucket: str = "stackdriver-test-143416-file-transfers"

    # Output
    test_undeclared_outputs_dir: Path | None = None
    log_upload_url_root: str = constants.DEFAULT_LOG_UPLOAD_URL_ROOT

    # CI
    kokoro_build_id: str | None = None
    kokoro_build_artifacts_subdir: str | None = None
    image_specs: str = ""

    # Tooling
    gcloud_bin: str = "gcloud"
    cloudsdk_python: str | None = Field(default=None)
    """Interpreter passed to gcloud as CLOUDSDK_PYTHON, when set."""

    def image_spec_list(self) -> list[str]:
        """IMAGE_SPECS split into individual image specs."""
        return [spec.strip() for spec in self.image_specs.split(",") if spec.strip()]

    def first_image_spec(self) -> str:
        """First entry of IMAGE_SPECS, or "" when unset."""
        specs = self.image_spec_list()
        return specs[0] if specs else ""

    @property
    def is_external_build(self) -> bool:
        """True when running as the restricted account that may only touch github-* VMs."""
        return "build-and-test-external@" in (self.service_email or "")
