"""
Content fingerprints for generated artifacts.

A workload whose pod template carries ``checksum/...`` annotations is rolled
whenever one of the watched fingerprints changes, without the task graph
having to model explicit restart edges.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Dict, Iterable, Mapping, Optional

CHECKSUM_PREFIX = "checksum/"


def fingerprint(content: bytes | str) -> str:
    """SHA-256 hex digest of ``content``."""
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def fingerprint_data(data: Mapping[str, Any]) -> str:
    """Fingerprint of a mapping, independent of key order."""
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return fingerprint(canonical)


def secret_checksum_key(secret_name: str) -> str:
    return f"{CHECKSUM_PREFIX}secret-{secret_name}"


def stamp_annotations(checksums: Mapping[str, str], keys: Iterable[str]) -> Dict[str, str]:
    """Project the present ``keys`` of ``checksums`` into workload annotations."""
    return {key: checksums[key] for key in keys if key in checksums}


class ChecksumRegistry:
    """Checksums collected during one run, keyed by symbolic name."""

    def __init__(self) -> None:
        self._entries: Dict[str, str] = {}

    def record(self, key: str, content: bytes | str) -> str:
        value = fingerprint(content)
        self._entries[key] = value
        return value

    def record_data(self, key: str, data: Mapping[str, Any]) -> str:
        value = fingerprint_data(data)
        self._entries[key] = value
        return value

    def record_object(self, key: str, obj: Mapping[str, Any]) -> str:
        """Record the fingerprint of an object's ``data`` section."""
        return self.record_data(key, obj.get("data") or {})

    def get(self, key: str) -> Optional[str]:
        return self._entries.get(key)

    def as_dict(self) -> Dict[str, str]:
        return dict(self._entries)

    def stamp_annotations(self, keys: Iterable[str]) -> Dict[str, str]:
        return stamp_annotations(self._entries, keys)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)
