from __future__ import annotations

from pathlib import Path

import pytest

from snowflake_installer import users
from snowflake_installer.errors import UserConfigError
from snowflake_installer.users import adapt_home_config, adapt_system_user, detect_user

HOME_NIX = """\
{pkgs, ...}: {
  home = {
    username = "jager";
    homeDirectory = "/home/jager";
    stateVersion = "24.05";
  };
}
"""

HOME_DEFAULT = """\
{inputs, ...}: {
  home-manager = {
    useGlobalPkgs = true;
    users = {
      jager = import ./jager;
    };
  };
}
"""

USERS_NIX = """\
{pkgs, ...}: {
  users.users.jager = {
    isNormalUser = true;
    extraGroups = ["wheel" "networkmanager"];
  };
}
"""


@pytest.fixture
def user_flake(tmp_path: Path) -> Path:
    root = tmp_path / "flake"
    (root / "home" / "jager" / "programs").mkdir(parents=True)
    (root / "home" / "jager" / "home.nix").write_text(HOME_NIX, encoding="utf-8")
    (root / "home" / "jager" / "programs" / "git.nix").write_text("{}\n", encoding="utf-8")
    (root / "home" / "default.nix").write_text(HOME_DEFAULT, encoding="utf-8")
    (root / "hosts" / "config" / "system").mkdir(parents=True)
    (root / "hosts" / "config" / "system" / "users.nix").write_text(USERS_NIX, encoding="utf-8")
    return root


def test_detect_user_given_no_controlling_terminal_when_detected_then_effective_user_is_used(monkeypatch) -> None:
    # Given
    def _no_tty() -> str:
        raise OSError(6, "No such device or address")

    monkeypatch.setattr(users.os, "getlogin", _no_tty)
    monkeypatch.setattr(users.getpass, "getuser", lambda: "kira")

    # When / Then
    assert detect_user() == "kira"


def test_detect_user_given_no_name_anywhere_when_detected_then_user_config_error(monkeypatch) -> None:
    # Given
    def _missing() -> str:
        raise KeyError("getpwuid(): uid not found: 4242")

    monkeypatch.setattr(users.os, "getlogin", lambda: "")
    monkeypatch.setattr(users.getpass, "getuser", _missing)

    # When / Then
    with pytest.raises(UserConfigError, match="Unable to detect current user"):
        detect_user()


def test_adapt_home_config_given_new_user_when_adapted_then_template_copied_and_identity_rewritten(user_flake) -> None:
    # Given / When
    adapt_home_config(user_flake, "kira")

    # Then
    home_nix = (user_flake / "home" / "kira" / "home.nix").read_text(encoding="utf-8")
    assert 'username = "kira";' in home_nix
    assert 'homeDirectory = "/home/kira";' in home_nix
    assert (user_flake / "home" / "kira" / "programs" / "git.nix").is_file()
    assert (user_flake / "home" / "jager" / "home.nix").read_text(encoding="utf-8") == HOME_NIX
    default = (user_flake / "home" / "default.nix").read_text(encoding="utf-8")
    assert "    users = {\n      kira = import ./kira;\n      jager = import ./jager;\n" in default


def test_adapt_home_config_given_already_registered_user_when_adapted_twice_then_single_import_line(
    user_flake,
) -> None:
    # Given
    adapt_home_config(user_flake, "kira")
    first = (user_flake / "home" / "default.nix").read_text(encoding="utf-8")

    # When
    adapt_home_config(user_flake, "kira")

    # Then
    second = (user_flake / "home" / "default.nix").read_text(encoding="utf-8")
    assert second == first
    assert second.count("kira = import") == 1


def test_adapt_home_config_given_existing_user_dir_when_adapted_then_it_is_not_replaced(user_flake) -> None:
    # Given
    own = user_flake / "home" / "kira"
    own.mkdir()
    (own / "home.nix").write_text('home.username = "old";\nhome.homeDirectory = "/home/old";\n', encoding="utf-8")

    # When
    adapt_home_config(user_flake, "kira")

    # Then
    assert not (own / "programs").exists()
    assert (own / "home.nix").read_text(encoding="utf-8") == 'home.username = "kira";\nhome.homeDirectory = "/home/kira";\n'


def test_adapt_home_config_given_missing_template_when_adapted_then_user_config_error(tmp_path) -> None:
    # Given
    (tmp_path / "home").mkdir()

    # When / Then
    with pytest.raises(UserConfigError, match="template not found"):
        adapt_home_config(tmp_path, "kira")
    assert not (tmp_path / "home" / "kira").exists()


def test_adapt_system_user_given_template_account_when_adapted_then_account_is_renamed(user_flake) -> None:
    # Given
    users_nix = user_flake / "hosts" / "config" / "system" / "users.nix"

    # When
    adapt_system_user(user_flake, "kira")

    # Then
    text = users_nix.read_text(encoding="utf-8")
    assert "users.users.kira = {" in text
    assert "jager" not in text


def test_adapt_system_user_given_no_users_module_when_adapted_then_nothing_is_created(tmp_path) -> None:
    # Given / When
    adapt_system_user(tmp_path, "kira")

    # Then
    assert not (tmp_path / "hosts").exists()
