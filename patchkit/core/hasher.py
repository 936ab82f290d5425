"""Canonical hashing helpers for the audit chain and build fingerprints."""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any


def canonical_json_bytes(obj: Any) -> bytes:
    """Deterministic JSON: sorted keys, compact separators, ASCII, UTF-8."""
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def file_sha256(path: Path, chunk_size: int = 1 << 16) -> str:
    """Stream a file through SHA-256."""
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


def tree_fingerprints(root: Path, *, skip: tuple[str, ...] = (".git",)) -> dict[str, str]:
    """Map every regular file under *root* (repo-relative, POSIX) to its digest.

    Symlinks are fingerprinted by their target string so that two trees
    with identical links compare equal without following them.
    """
    root = Path(root)
    result: dict[str, str] = {}
    for path in sorted(root.rglob("*")):
        rel = path.relative_to(root)
        if rel.parts and rel.parts[0] in skip:
            continue
        if path.is_symlink():
            result[rel.as_posix()] = sha256_hex(str(path.readlink()).encode("utf-8"))
        elif path.is_file():
            result[rel.as_posix()] = file_sha256(path)
    return result


def compute_entry_hash(entry_dict: dict[str, Any]) -> str:
    """SHA-256 of an audit entry, excluding the ``entry_hash`` field itself."""
    d = {k: v for k, v in entry_dict.items() if k != "entry_hash"}
    return sha256_hex(canonical_json_bytes(d))
