"""Pydantic models shared across probing, rendering, patching, and install steps."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

CpuVendor = Literal["intel", "amd", "unknown"]
GpuVendor = Literal["intel", "amd", "nvidia"]


class Disk(BaseModel):
    """A whole block device reported by ``lsblk``."""

    model_config = ConfigDict(frozen=True)

    name: str
    size_bytes: int = Field(ge=0)
    kind: Literal["disk", "nvme"] = "disk"

    @property
    def path(self) -> str:
        return f"/dev/{self.name}"


class HardwareFacts(BaseModel):
    """Detected hardware, produced once per run and passed explicitly."""

    model_config = ConfigDict(frozen=True)

    cpu_vendor: CpuVendor = "unknown"
    gpu_vendors: tuple[GpuVendor, ...] = ()
    disks: tuple[Disk, ...] = ()
    sata_controller: bool = False
    virtio_devices: bool = False
    virtual_machine: bool = False

    @field_validator("gpu_vendors")
    @classmethod
    def _dedupe_gpus(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(dict.fromkeys(value))

    @field_validator("disks")
    @classmethod
    def _largest_first(cls, value: tuple[Disk, ...]) -> tuple[Disk, ...]:
        return tuple(sorted(value, key=lambda disk: disk.size_bytes, reverse=True))


class MountInfo(BaseModel):
    """Root and boot mounts of the running system, used for rebuild mode."""

    model_config = ConfigDict(frozen=True)

    root_device: str = "/dev/sda1"
    root_fstype: str = "ext4"
    boot_device: str | None = None
    boot_fstype: str | None = None


class HostProfile(BaseModel):
    """The machine being configured and how it is being configured."""

    model_config = ConfigDict(frozen=True)

    hostname: str
    reinstall_mode: bool = False

    @property
    def kind(self) -> Literal["minimal", "full"]:
        return "minimal" if self.hostname == "minimal" else "full"


class ArtifactKind(str, Enum):
    DISK = "disk"
    HARDWARE = "hardware"
    HOST = "host"

    @property
    def filename(self) -> str:
        return {
            ArtifactKind.DISK: "disk-configuration.nix",
            ArtifactKind.HARDWARE: "hardware-configuration.nix",
            ArtifactKind.HOST: "default.nix",
        }[self]


class GeneratedArtifact(BaseModel):
    """Rendered configuration text and the path it belongs at."""

    model_config = ConfigDict(frozen=True)

    kind: ArtifactKind
    path: Path
    text: str


class WriteResult(BaseModel):
    artifact: GeneratedArtifact
    written: bool


class PatchOutcome(str, Enum):
    ALREADY_PRESENT = "already_present"
    INSERTED = "inserted"
    REPAIRED = "repaired"
    RESET = "reset"


class CorruptEntry(BaseModel):
    """A host entry whose attribute key is a ``KEY=VALUE`` token."""

    model_config = ConfigDict(frozen=True)

    line_no: int = Field(ge=1)
    line: str


class PatchResult(BaseModel):
    outcome: PatchOutcome
    backup_path: Path | None = None
    removed_line_numbers: list[int] = Field(default_factory=list)


class EnvironmentKind(str, Enum):
    LIVE = "live"
    INSTALLED = "installed"
