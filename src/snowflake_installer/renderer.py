"""Render disk, hardware, and host Nix modules from hardware facts."""

from __future__ import annotations

from datetime import datetime
from functools import lru_cache
from pathlib import Path

from snowflake_installer.models import ArtifactKind, HardwareFacts, HostProfile, MountInfo

CORE_INITRD_MODULES = ("nvme", "sd_mod", "xhci_pci", "ahci", "usb_storage", "usbhid", "sr_mod")
SATA_INITRD_MODULES = ("sata_nv", "sata_via", "sata_sis", "sata_uli")
VIRTIO_INITRD_MODULES = ("virtio_pci", "virtio_blk", "virtio_scsi", "virtio_net")

KVM_MODULES = {"intel": "kvm-intel", "amd": "kvm-amd"}
PSTATE_PARAMS = {"intel": "intel_pstate=active", "amd": "amd_pstate=active"}

BTRFS_SUBVOLUMES = (("/root", "/"), ("/home", "/home"), ("/nix", "/nix"))
BTRFS_MOUNT_OPTIONS = ("compress=zstd", "noatime")

BOOTLOADERS = ("systemd-boot", "grub", "generic-extlinux-compatible")

BASE_SYSTEM_IMPORTS = ("../config/system", "../config/nix", "../config/security", "../config/services")
MINIMAL_SERVICE_MODULES = ("services/greetd.nix", "services/dbus.nix", "services/pipewire.nix")
FULL_LOCAL_MODULES = (
    "programs/dconf.nix",
    "programs/gnupg.nix",
    "programs/thunar.nix",
    "services/blueman.nix",
    "services/dbus.nix",
    "services/gnome-keyring.nix",
    "services/greetd.nix",
    "services/gvfs.nix",
    "services/pipewire.nix",
    "virtualisation/containers.nix",
    "virtualisation/docker.nix",
)
FULL_SHARED_IMPORTS = (
    "../config/fonts",
    "../config/hardware/bluetooth",
    "../config/hardware/ssd",
    "../config/window-managers/hyprland",
)
PLACEHOLDER_MODULES = (*FULL_LOCAL_MODULES, "power-management.nix")


def render(
    kind: ArtifactKind,
    profile: HostProfile,
    facts: HardwareFacts,
    *,
    disk: str | None = None,
    mounts: MountInfo | None = None,
    generated_at: datetime | None = None,
) -> str:
    """Render one artifact's text.

    Args:
        kind: Which file to render.
        profile: Hostname and install mode.
        facts: Probed hardware.
        disk: Target disk path, required for ``ArtifactKind.DISK``.
        mounts: Current mounts, used for the hardware config in reinstall mode.
        generated_at: Timestamp written into the hardware config header.
    """
    if kind is ArtifactKind.DISK:
        if not disk:
            raise ValueError("A target disk is required to render the disk configuration.")
        return render_disk_config(disk)
    if kind is ArtifactKind.HARDWARE:
        return render_hardware_config(profile, facts, mounts=mounts, generated_at=generated_at)
    return render_host_config(profile, facts)


def render_disk_config(disk: str) -> str:
    options = " ".join(f'"{option}"' for option in BTRFS_MOUNT_OPTIONS)
    subvolumes = "\n".join(
        "\n".join(
            [
                f'                  "{name}" = {{',
                f'                    mountpoint = "{mountpoint}";',
                f"                    mountOptions = [{options}];",
                "                  };",
            ]
        )
        for name, mountpoint in BTRFS_SUBVOLUMES
    )
    return _render_template(_load_template("disk-configuration.nix"), {"DISK": disk, "SUBVOLUMES": subvolumes})


def initrd_modules(facts: HardwareFacts) -> list[str]:
    modules = list(CORE_INITRD_MODULES)
    if facts.sata_controller:
        modules.extend(SATA_INITRD_MODULES)
    if facts.virtio_devices:
        modules.extend(VIRTIO_INITRD_MODULES)
    return modules


def render_hardware_config(
    profile: HostProfile,
    facts: HardwareFacts,
    *,
    mounts: MountInfo | None = None,
    generated_at: datetime | None = None,
) -> str:
    vendor = facts.cpu_vendor
    kernel_modules = [KVM_MODULES[vendor]] if vendor in KVM_MODULES else []
    kernel_params = ["nowatchdog"]
    if vendor in PSTATE_PARAMS:
        kernel_params.append(PSTATE_PARAMS[vendor])

    extra: list[str] = []
    if vendor in KVM_MODULES:
        label = "Intel" if vendor == "intel" else "AMD"
        extra.append(
            f"\n  # {label} CPU microcode updates\n"
            f"  hardware.cpu.{vendor}.updateMicrocode = lib.mkDefault true;\n"
        )
    if facts.virtual_machine:
        extra.append(
            "\n  # Virtual machine optimizations\n"
            "  services.qemuGuest.enable = lib.mkDefault true;\n"
            "  services.spice-vdagentd.enable = lib.mkDefault true;\n"
        )
    if profile.reinstall_mode:
        extra.append(_render_filesystems(mounts or MountInfo()))
    else:
        extra.append("\n  # Fresh install - filesystem configuration handled by disko\n")

    stamp = (generated_at or datetime.now()).strftime("%a %b %d %H:%M:%S %Y")
    replacements = {
        "HOSTNAME": profile.hostname,
        "GENERATED_AT": stamp,
        "INITRD_MODULES": "\n".join(f'        "{module}"' for module in initrd_modules(facts)),
        "KERNEL_MODULES": _nix_list_items(kernel_modules),
        "KERNEL_PARAMS": _nix_list_items(kernel_params),
        "EXTRA": "".join(extra),
    }
    return _render_template(_load_template("hardware-configuration.nix"), replacements)


def _render_filesystems(mounts: MountInfo) -> str:
    lines = [
        "",
        "  # Minimal filesystem configuration for rebuild mode",
        '  fileSystems."/" = {',
        f'    device = "{mounts.root_device}";',
        f'    fsType = "{mounts.root_fstype}";',
        "  };",
    ]
    if mounts.boot_device:
        lines.extend(
            [
                "",
                '  fileSystems."/boot" = {',
                f'    device = "{mounts.boot_device}";',
                f'    fsType = "{mounts.boot_fstype or "vfat"}";',
                "  };",
            ]
        )
    return "\n".join(lines) + "\n"


def host_imports(profile: HostProfile, facts: HardwareFacts) -> list[str]:
    """Return the host module's import list, blank strings marking group breaks."""
    imports: list[str] = []
    if not profile.reinstall_mode:
        imports.append("./disk-configuration.nix")
    imports.append("./hardware-configuration.nix")

    if profile.kind == "minimal":
        imports.extend(["", "# Essential system configuration (includes bootloader)", *BASE_SYSTEM_IMPORTS])
        imports.extend(["", "# Basic desktop services for minimal config"])
        imports.extend(f"./{module}" for module in MINIMAL_SERVICE_MODULES)
        return imports

    imports.append("./power-management.nix")
    imports.extend(
        ["", "# Essential system configuration (includes bootloader)", *BASE_SYSTEM_IMPORTS, "../config/shell"]
    )
    imports.append("")
    imports.extend(f"./{module}" for module in FULL_LOCAL_MODULES)
    imports.extend(["", *FULL_SHARED_IMPORTS])
    if facts.cpu_vendor in ("intel", "amd"):
        imports.append(f"../config/hardware/cpu/{facts.cpu_vendor}")
    imports.extend(f"../config/hardware/gpu/{gpu}" for gpu in facts.gpu_vendors)
    return imports


def bootloader_disable_lines(indent: str = "  ") -> list[str]:
    return [f"{indent}boot.loader.{loader}.enable = lib.mkForce false;" for loader in BOOTLOADERS]


def render_host_config(profile: HostProfile, facts: HardwareFacts) -> str:
    imports = "\n".join(f"    {entry}" if entry else "" for entry in host_imports(profile, facts))

    bootloader = ""
    if profile.reinstall_mode:
        bootloader = (
            "\n  # Disable bootloader installation in reinstall mode - use existing bootloader\n"
            + "\n".join(bootloader_disable_lines())
            + "\n"
        )

    if profile.kind == "minimal":
        scrub = "" if profile.reinstall_mode else "  services.btrfs.autoScrub.enable = true;\n"
        return _render_template(
            _load_template("host-minimal.nix"),
            {"IMPORTS": imports, "BOOTLOADER": bootloader, "SCRUB": scrub},
        )

    scrub = "" if profile.reinstall_mode else "    btrfs.autoScrub.enable = true;\n"
    gpu_extra = ""
    if "nvidia" in facts.gpu_vendors:
        gpu_extra = (
            "\n  # NVIDIA Configuration\n"
            '  services.xserver.videoDrivers = ["nvidia"];\n'
            "  hardware.nvidia-container-toolkit.enable = true;\n"
        )
    return _render_template(
        _load_template("host-full.nix"),
        {"IMPORTS": imports, "BOOTLOADER": bootloader, "SCRUB": scrub, "GPU_EXTRA": gpu_extra},
    )


def render_boot_overlay() -> str:
    """Render the standalone module that disables bootloader installation."""
    return _render_template(
        _load_template("reinstall-disable-boot.nix"),
        {"BOOTLOADER_LINES": "\n".join(bootloader_disable_lines())},
    )


def _nix_list_items(values: list[str]) -> str:
    return " ".join(f'"{value}"' for value in values)


def _render_template(template: str, replacements: dict[str, str]) -> str:
    """Replace ``{{TOKEN}}`` placeholders in a template string."""
    rendered = template
    for token, value in replacements.items():
        rendered = rendered.replace(f"{{{{{token}}}}}", value)
    return rendered


@lru_cache(maxsize=None)
def _load_template(filename: str) -> str:
    """Load and cache Nix templates from ``templates/``."""
    template_path = Path(__file__).with_name("templates") / filename
    return template_path.read_text(encoding="utf-8")
