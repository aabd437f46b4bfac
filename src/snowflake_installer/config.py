"""Run settings, populated from CLI options and their environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, field_validator

DEFAULT_HOSTNAME = "yuki"
DEFAULT_USER = "jager"


class InstallerSettings(BaseModel):
    """Feature switches for one installer run.

    ``reinstall_mode`` is tri-state: ``None`` means detect live ISO versus an
    installed system, ``True``/``False`` force rebuild or fresh install.
    ``user`` of ``None`` means the login user when rebuilding an installed
    system and ``DEFAULT_USER`` otherwise.
    """

    model_config = ConfigDict(frozen=True)

    flake_dir: Path = Path(".")
    skip_nixos_check: bool = False
    skip_internet_check: bool = False
    skip_confirmation: bool = False
    skip_drm_detection: bool = False
    reinstall_mode: bool | None = None
    debug: bool = False
    force_disk_config: bool = False
    regenerate_hw_config: bool = False
    regenerate_host: bool = False
    user: str | None = None
    adapt_user: bool = True

    @field_validator("flake_dir")
    @classmethod
    def _absolute(cls, value: Path) -> Path:
        return value.expanduser().resolve()

    @property
    def hosts_dir(self) -> Path:
        return self.flake_dir / "hosts"

    @property
    def hosts_file(self) -> Path:
        return self.hosts_dir / "default.nix"
