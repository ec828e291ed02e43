from __future__ import annotations

import logging
from typing import Iterable

from .types import AccessKey

LOGGER = logging.getLogger("SSSupervisor.Ciphers")

# AEAD ciphers are listed at https://shadowsocks.org/doc/aead.html
_AEAD_SUFFIXES = ("gcm", "poly1305")


def is_aead_cipher(cipher: str) -> bool:
    if not isinstance(cipher, str) or not cipher:
        return False
    return cipher.lower().endswith(_AEAD_SUFFIXES)


def filter_aead_keys(
    keys: Iterable[AccessKey],
) -> tuple[list[AccessKey], list[AccessKey]]:
    """Split keys into (accepted, rejected), warning once per rejected key."""

    accepted: list[AccessKey] = []
    rejected: list[AccessKey] = []
    for key in keys:
        if is_aead_cipher(key.cipher):
            accepted.append(key)
            continue
        LOGGER.warning(
            "Cipher %s for access key %s is not supported: use an AEAD cipher instead.",
            key.cipher,
            key.id,
        )
        rejected.append(key)
    return accepted, rejected
