import os

import pytest

from savesync.core.errors import PathOutsideRootsError
from savesync.sync.paths import contract, expand, is_prefix_key, sanitize_game_name


def test_contract_install_dir_path_becomes_relative_key(tmp_path):
    install = tmp_path / "game"
    path = install / "saves" / "slot1.sav"

    assert contract(str(path), str(install)) == "saves/slot1.sav"


def test_contract_prefix_path_gets_marker(tmp_path):
    install = tmp_path / "game"
    prefix = tmp_path / "pfx"
    path = prefix / "drive_c" / "users" / "steam" / "save.dat"

    key = contract(str(path), str(install), str(prefix))

    assert key == "%PREFIX%/drive_c/users/steam/save.dat"
    assert is_prefix_key(key)


def test_contract_more_specific_root_wins(tmp_path):
    install = tmp_path / "game"
    prefix = install / "pfx"
    path = prefix / "save.dat"

    assert contract(str(path), str(install), str(prefix)) == "%PREFIX%/save.dat"
    assert contract(str(install / "other.dat"), str(install), str(prefix)) == "other.dat"


def test_contract_does_not_match_sibling_with_same_leading_text(tmp_path):
    install = tmp_path / "game"
    with pytest.raises(PathOutsideRootsError):
        contract(str(tmp_path / "game2" / "save.dat"), str(install))


def test_contract_outside_roots_raises(tmp_path):
    with pytest.raises(PathOutsideRootsError):
        contract(str(tmp_path / "elsewhere" / "save.dat"), str(tmp_path / "game"), str(tmp_path / "pfx"))


def test_expand_round_trip(tmp_path):
    install = tmp_path / "game"
    prefix = tmp_path / "pfx"
    for path in (install / "a" / "b.sav", prefix / "c" / "d.sav", install / "top.sav"):
        key = contract(str(path), str(install), str(prefix))
        assert expand(key, str(install), str(prefix)) == os.path.normpath(str(path))


def test_expand_prefix_key_without_prefix_raises(tmp_path):
    with pytest.raises(PathOutsideRootsError):
        expand("%PREFIX%/save.dat", str(tmp_path))


def test_expand_rejects_parent_traversal(tmp_path):
    with pytest.raises(PathOutsideRootsError):
        expand("../escape.sav", str(tmp_path))


def test_expand_accepts_backslash_and_legacy_marker(tmp_path):
    assert expand("saves\\slot.sav", str(tmp_path)) == str(tmp_path / "saves" / "slot.sav")
    assert expand("%GAMEPATH%/slot.sav", str(tmp_path)) == str(tmp_path / "slot.sav")


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("Hollow Knight", "Hollow Knight"),
        ("Half-Life: Alyx", "Half-Life_ Alyx"),
        ('a/b\\c*d?e"f<g>h|i', "a_b_c_d_e_f_g_h_i"),
        ("   ", "UnknownGame"),
        ("", "UnknownGame"),
    ],
)
def test_sanitize_game_name(raw, expected):
    assert sanitize_game_name(raw) == expected
