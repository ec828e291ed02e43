from __future__ import annotations

"""
Rendering and atomic persistence of the Shadowsocks server key configuration.

The server reads a YAML document of the form::

    keys:
    - cipher: chacha20-ietf-poly1305
      id: alpha
      port: 9000
      secret: ...

Keys are sorted by id and record fields alphabetically so the same key set
always produces the same bytes. The file is replaced in a single `os.replace`
so the server never observes a partially written document.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Iterable

import yaml

from .ciphers import filter_aead_keys
from .types import AccessKey

LOGGER = logging.getLogger("SSSupervisor.ConfigFile")


class ConfigWriteError(RuntimeError):
    """Raised when the server configuration cannot be persisted."""

    def __init__(self, path: Path, message: str) -> None:
        super().__init__(message)
        self.path = path


def _sort_key(key: AccessKey) -> tuple[str, str]:
    return key.id, json.dumps(key.to_config(), sort_keys=True)


def render_config(keys: Iterable[AccessKey]) -> str:
    """Serialize keys into the canonical YAML configuration document."""

    records = [key.to_config() for key in sorted(keys, key=_sort_key)]
    return yaml.safe_dump(
        {"keys": records},
        default_flow_style=False,
        sort_keys=True,
        allow_unicode=True,
    )


def atomic_write_text(path: Path, content: str) -> None:
    """Replace ``path`` with ``content`` via a temp file in the same directory."""

    directory = path.parent
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ConfigWriteError(
            path, f"Unable to create config directory {directory}: {exc}"
        ) from exc

    tmp_name: str | None = None
    try:
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=directory,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
        ) as handle:
            tmp_name = handle.name
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except OSError as exc:
        if tmp_name is not None:
            try:
                os.unlink(tmp_name)
            except OSError as cleanup_exc:
                LOGGER.debug("Could not remove temp file %s: %s", tmp_name, cleanup_exc)
        raise ConfigWriteError(path, f"Unable to write config {path}: {exc}") from exc


def write_config_file(path: Path, keys: Iterable[AccessKey]) -> list[AccessKey]:
    """Filter out non-AEAD keys and atomically write the rest to ``path``."""

    accepted, rejected = filter_aead_keys(keys)
    atomic_write_text(path, render_config(accepted))
    LOGGER.info(
        "Wrote %s access key(s) to %s (%s skipped).",
        len(accepted),
        path,
        len(rejected),
    )
    return accepted
