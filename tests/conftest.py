from __future__ import annotations

import logging
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from snowflake_installer.models import Disk, HardwareFacts, HostProfile

HOSTS_HEADER = """\
# Host definitions for the flake
{inputs, nixosModules, homeModules, ...}: let
  mkNixosSystem = {hostname, system, modules}: inputs.nixpkgs.lib.nixosSystem {
    inherit system;
    specialArgs = {inherit inputs hostname;};
    modules = modules ++ [./${hostname}];
  };
in {
"""

HOSTS_FOOTER = """\
  };

  # keep this comment { with braces }
  devShells = {};
}
"""


@pytest.fixture
def hosts_text() -> str:
    return (
        HOSTS_HEADER
        + "  nixosConfigurations = {\n"
        + "    yuki = mkNixosSystem {\n"
        + '      hostname = "yuki";\n'
        + '      system = "x86_64-linux";\n'
        + "      modules = [nixosModules homeModules];\n"
        + "    };\n"
        + HOSTS_FOOTER
    )


@pytest.fixture
def corrupt_hosts_text() -> str:
    return (
        HOSTS_HEADER
        + "  nixosConfigurations = {\n"
        + "    yuki = mkNixosSystem {\n"
        + '      hostname = "yuki";\n'
        + '      system = "x86_64-linux";\n'
        + "      modules = [nixosModules homeModules];\n"
        + "    };\n"
        + "    SKIP_DRM_DETECTION=1 = mkNixosSystem {\n"
        + '      hostname = "SKIP_DRM_DETECTION=1";\n'
        + '      system = "x86_64-linux";\n'
        + "      modules = [nixosModules homeModules];\n"
        + "    };\n"
        + HOSTS_FOOTER
    )


@pytest.fixture
def flake_dir(tmp_path: Path, hosts_text: str) -> Path:
    root = tmp_path / "flake"
    (root / "hosts" / "yuki").mkdir(parents=True)
    (root / "flake.nix").write_text("{ outputs = _: {}; }\n", encoding="utf-8")
    (root / "hosts" / "default.nix").write_text(hosts_text, encoding="utf-8")
    return root


@pytest.fixture
def intel_nvidia_facts() -> HardwareFacts:
    return HardwareFacts(
        cpu_vendor="intel",
        gpu_vendors=("nvidia", "intel"),
        disks=(
            Disk(name="nvme0n1", size_bytes=512_000_000_000, kind="nvme"),
            Disk(name="sda", size_bytes=1_000_000_000_000, kind="disk"),
        ),
    )


@pytest.fixture
def full_profile() -> HostProfile:
    return HostProfile(hostname="yuki")


@pytest.fixture(autouse=True)
def _reset_package_logging():
    yield
    package_logger = logging.getLogger("snowflake_installer")
    for handler in package_logger.handlers[:]:
        package_logger.removeHandler(handler)
    package_logger.propagate = True
