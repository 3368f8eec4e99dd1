"""
Entry naming — the AFS hash used for hash-named archive entries.

Archive entries are stored under a 32-bit hash of their lowercase,
forward-slash path; extracted entries are written out as the 8-digit
big-endian hex rendering of that hash.
"""

import re
from typing import Optional

_HEX_NAME = re.compile(r"^[0-9A-Fa-f]{8}$")


def normalize_path(path: str) -> str:
    return path.lower().replace("\\", "/")


def afs_hash(path: str) -> int:
    """Signed 32-bit AFS hash of `path` (h = h * 37 + c)."""
    h = 0
    for ch in normalize_path(path):
        h = (h * 37 + ord(ch)) & 0xFFFFFFFF
    return h - 0x100000000 if h & 0x80000000 else h


def digest_to_name(digest: int) -> str:
    return f"{digest & 0xFFFFFFFF:08X}"


def digest_from_name(name: str) -> Optional[int]:
    """Digest encoded in an entry filename, or None if it is not hash-named."""
    if not _HEX_NAME.match(name):
        return None
    value = int(name, 16)
    return value - 0x100000000 if value & 0x80000000 else value


def digest_from_bytes(raw: bytes) -> int:
    """Digest stored in binary form (4 bytes, big-endian)."""
    if len(raw) != 4:
        raise ValueError(f"binary digest must be 4 bytes, got {len(raw)}")
    return int.from_bytes(raw, "big", signed=True)
