"""Canonical digests for variants, plans and files."""

from __future__ import annotations

import hashlib
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import cbor2


def canonical_digest(payload: Any) -> str:
    """SHA-256 over the canonical CBOR encoding of ``payload``."""
    encoded = cbor2.dumps(payload, canonical=True)
    return hashlib.sha256(encoded).hexdigest()


def variant_hash(variant: Mapping[str, str], *, target_platform: str, length: int = 7) -> str:
    """Short ``h``-prefixed hash used in build strings."""
    payload = {
        "target_platform": target_platform,
        "variant": dict(sorted(variant.items())),
    }
    return "h" + canonical_digest(payload)[:length]


def file_sha256(path: str | Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


__all__ = ["canonical_digest", "file_sha256", "variant_hash"]
