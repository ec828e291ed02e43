from __future__ import annotations

import os
from pathlib import Path

import pytest
import yaml

from ss_supervisor.config_file import (
    ConfigWriteError,
    atomic_write_text,
    render_config,
    write_config_file,
)
from ss_supervisor.types import AccessKey


def make_keys() -> list[AccessKey]:
    return [
        AccessKey(id="beta", secret="s-b", cipher="aes-256-gcm", port=9001),
        AccessKey(id="alpha", secret="s-a", cipher="chacha20-ietf-poly1305", port=9000),
    ]


def test_render_sorts_keys_and_fields() -> None:
    text = render_config(make_keys())

    document = yaml.safe_load(text)
    assert [record["id"] for record in document["keys"]] == ["alpha", "beta"]
    first_record = text.split("- ", 1)[1].splitlines()
    field_names = [line.strip().split(":")[0] for line in first_record[:4]]
    assert field_names == ["cipher", "id", "port", "secret"]


def test_render_keeps_extra_fields_and_drops_missing_port() -> None:
    key = AccessKey(id="x", secret="s", cipher="aes-128-gcm", prefix="\u0016\u0003")

    document = yaml.safe_load(render_config([key]))

    assert document == {
        "keys": [{"cipher": "aes-128-gcm", "id": "x", "prefix": "\u0016\u0003", "secret": "s"}]
    }


def test_render_is_independent_of_input_order() -> None:
    keys = make_keys()
    assert render_config(keys) == render_config(list(reversed(keys)))


def test_empty_key_set_renders_empty_list() -> None:
    assert yaml.safe_load(render_config([])) == {"keys": []}


def test_write_creates_parent_directories(tmp_path: Path) -> None:
    target = tmp_path / "state" / "outline-ss-server" / "config.yml"

    written = write_config_file(target, make_keys())

    assert target.exists()
    assert {key.id for key in written} == {"alpha", "beta"}
    assert list(target.parent.glob(".config.yml.*")) == []


def test_identical_inputs_produce_identical_bytes(tmp_path: Path) -> None:
    target = tmp_path / "config.yml"

    write_config_file(target, make_keys())
    first = target.read_bytes()
    write_config_file(target, list(reversed(make_keys())))

    assert target.read_bytes() == first


def test_non_aead_keys_never_reach_the_file(tmp_path: Path) -> None:
    target = tmp_path / "config.yml"
    keys = [
        AccessKey(id="a", secret="s1", cipher="chacha20-poly1305"),
        AccessKey(id="b", secret="s2", cipher="rc4"),
    ]

    write_config_file(target, keys)

    document = yaml.safe_load(target.read_text(encoding="utf-8"))
    assert [record["id"] for record in document["keys"]] == ["a"]


def test_failed_replace_keeps_previous_file(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    target = tmp_path / "config.yml"
    write_config_file(target, make_keys())
    previous = target.read_bytes()

    def broken_replace(src: str, dst: str) -> None:
        raise PermissionError(13, "Permission denied", dst)

    monkeypatch.setattr(os, "replace", broken_replace)

    with pytest.raises(ConfigWriteError):
        write_config_file(target, [AccessKey(id="z", secret="s", cipher="aes-256-gcm")])

    assert target.read_bytes() == previous
    assert list(tmp_path.glob(".config.yml.*")) == []


def test_directory_creation_failure_is_reported(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("occupied", encoding="utf-8")

    with pytest.raises(ConfigWriteError) as excinfo:
        atomic_write_text(blocker / "config.yml", "keys: []\n")

    assert excinfo.value.path == blocker / "config.yml"
