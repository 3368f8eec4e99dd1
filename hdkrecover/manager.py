"""
Recovery Manager — file and directory level glue around the two engines.

The engines work on byte buffers and digest sets. This module does the
reading, writing and reporting: it never writes anything for a failed
search, and it carries the 4-byte `.time` artifact across mapped folders.
"""

import os
import csv
import json
import time
import shutil
import struct
import logging
from dataclasses import dataclass, field
from typing import Optional

from .config import MapConfig, SearchConfig
from .keystream import AutoResult, RecoveryResult, auto, encrypt, recover_and_decrypt
from .mapper import PathMapping, recover_paths, validate_disambiguator
from .naming import afs_hash, digest_from_name, digest_to_name, normalize_path
from .patterns import harvest_paths, parse_mode, select_templates

logger = logging.getLogger(__name__)

TIME_FILE = ".time"
DEFAULT_OUTPUT_SUFFIX = "mapped"


# ─────────────────────────────────────────────────────────────
#  .time artifact
# ─────────────────────────────────────────────────────────────

def read_timestamp(path: str) -> int:
    """Read a `.time` file: exactly 4 bytes, little-endian unsigned."""
    with open(path, "rb") as f:
        raw = f.read()
    if len(raw) != 4:
        raise ValueError(f"{path}: timestamp file must be 4 bytes, got {len(raw)}")
    return struct.unpack("<I", raw)[0]


def write_timestamp(path: str, value: int) -> None:
    with open(path, "wb") as f:
        f.write(struct.pack("<I", value & 0xFFFFFFFF))


# ─────────────────────────────────────────────────────────────
#  Data Classes
# ─────────────────────────────────────────────────────────────

@dataclass
class HashedEntry:
    """A file found in an input folder."""
    abs_path: str
    rel_path: str
    digest: int
    hash_named: bool        # False when the file already carries a real path

    @property
    def name(self) -> str:
        return digest_to_name(self.digest)


@dataclass
class MapSession:
    """Represents one directory mapping run."""
    session_id: str
    input_dir: str
    output_dir: str
    mode: str = "fast"
    scope: str = "scene"
    uuid: Optional[str] = None
    start_time: float = 0.0
    end_time: float = 0.0
    entries: list[HashedEntry] = field(default_factory=list)
    mapping: PathMapping = field(default_factory=PathMapping)
    harvested: int = 0
    # mapped entries whose recovered path was taken by an already-named file
    conflicts: list[HashedEntry] = field(default_factory=list)
    timestamp: Optional[int] = None

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    @property
    def duration_human(self) -> str:
        d = self.duration
        if d < 60:
            return f"{d:.1f}s"
        if d < 3600:
            return f"{d / 60:.1f}m"
        return f"{d / 3600:.1f}h"

    @property
    def not_found(self) -> list[HashedEntry]:
        return [e for e in self.entries
                if e.hash_named and e.digest in self.mapping.unmapped]

    @property
    def summary(self) -> dict:
        return {
            "input": self.input_dir,
            "output": self.output_dir,
            "mode": self.mode,
            "scope": self.scope,
            "files": len(self.entries),
            "hash_named": sum(1 for e in self.entries if e.hash_named),
            "mapped": self.mapping.mapped_count,
            "not_found": len(self.not_found),
            "conflicts": len(self.conflicts),
            "harvested_candidates": self.harvested,
            "candidates_tried": self.mapping.candidates_tried,
            "collisions": self.mapping.collisions,
            "timestamp": self.timestamp,
            "duration": self.duration_human,
        }


# ─────────────────────────────────────────────────────────────
#  Input collection
# ─────────────────────────────────────────────────────────────

def collect_entries(input_dir: str) -> list[HashedEntry]:
    """
    Walk `input_dir` and classify every file.

    Top-level 8-hex-digit names are hash-named entries. Anything else
    already has a real path, and its digest is computed from that path.
    """
    if not os.path.isdir(input_dir):
        raise FileNotFoundError(f"Input folder does not exist: {input_dir}")

    entries = []
    for root, _, files in os.walk(input_dir):
        for name in sorted(files):
            abs_path = os.path.join(root, name)
            rel_path = os.path.relpath(abs_path, input_dir).replace(os.sep, "/")
            if rel_path == TIME_FILE:
                logger.debug("Skipping .time file: %s", abs_path)
                continue
            digest = digest_from_name(rel_path)
            if digest is not None:
                entries.append(HashedEntry(abs_path, rel_path, digest, True))
            else:
                entries.append(HashedEntry(abs_path, rel_path,
                                           afs_hash(normalize_path(rel_path)), False))
    entries.sort(key=lambda e: e.rel_path)
    return entries


def _check_output(path: str, overwrite: bool) -> None:
    if os.path.exists(path) and not overwrite:
        raise FileExistsError(f"File `{path}` already exists and was not overwritten.")


def _write_output(path: str, data: bytes, overwrite: bool) -> None:
    _check_output(path, overwrite)
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    with open(path, "wb") as f:
        f.write(data)


def _target_key(rel_path: str) -> str:
    return normalize_path(rel_path).strip("/")


def _safe_target(output_dir: str, rel_path: str) -> str:
    target = os.path.normpath(os.path.join(output_dir, *rel_path.split("/")))
    root = os.path.normpath(output_dir)
    if os.path.commonpath([root, target]) != root:
        raise ValueError(f"refusing to write outside {output_dir}: {rel_path}")
    return target


class RecoveryManager:
    """High-level entry point for decrypting payloads and mapping folders."""

    def __init__(self, search_config: Optional[SearchConfig] = None,
                 map_config: Optional[MapConfig] = None):
        self.search_config = search_config or SearchConfig()
        self.map_config = map_config or MapConfig()
        self.current_session: Optional[MapSession] = None

    # ── Crypt ──

    def decrypt_file(self, src: str, dst: str, key: bytes, requested="all",
                     overwrite: bool = False) -> RecoveryResult:
        _check_output(dst, overwrite)
        with open(src, "rb") as f:
            data = f.read()
        result, plaintext = recover_and_decrypt(data, key, requested, self.search_config)
        if plaintext is not None:
            _write_output(dst, plaintext, overwrite)
            logger.info("Decrypted %s -> %s (%s)", src, dst, result.matched_type.value)
        else:
            logger.warning("Could not determine plaintext type for %s (%s)",
                           src, result.status.value)
        return result

    def encrypt_file(self, src: str, dst: str, key: bytes, iv: bytes,
                     overwrite: bool = False) -> None:
        with open(src, "rb") as f:
            data = f.read()
        _write_output(dst, encrypt(data, key, iv), overwrite)
        logger.info("Encrypted %s -> %s", src, dst)

    def auto_file(self, src: str, dst: str, key: bytes, iv: Optional[bytes] = None,
                  overwrite: bool = False) -> AutoResult:
        _check_output(dst, overwrite)
        with open(src, "rb") as f:
            data = f.read()
        result = auto(data, key, self.search_config, iv)
        if result.ok:
            _write_output(dst, result.output, overwrite)
            logger.info("%s %s -> %s", result.action.capitalize() + "ed", src, dst)
        else:
            logger.warning("Could not determine plaintext type for %s", src)
        return result

    # ── Map ──

    def map_directory(
        self,
        input_dir: str,
        output_dir: Optional[str] = None,
        mode="fast",
        scope="scene",
        uuid: Optional[str] = None,
        harvest: Optional[bool] = None,
        overwrite: bool = False,
    ) -> MapSession:
        """
        Map a folder of hash-named entries into `output_dir`.

        Mapped entries land at their recovered path, unmapped ones keep
        their digest name; nothing is dropped.
        """
        mode = parse_mode(mode)
        template_set = select_templates(mode, scope)
        uuid = validate_disambiguator(template_set, uuid)
        if harvest is None:
            harvest = self.map_config.harvest

        input_dir = input_dir.rstrip("/\\") or input_dir
        if output_dir is None:
            output_dir = f"{input_dir}.{DEFAULT_OUTPUT_SUFFIX}"
        if os.path.exists(output_dir) and not overwrite:
            raise FileExistsError(
                f"Output folder `{output_dir}` already exists and was not overwritten.")

        session = MapSession(
            session_id=f"map_{int(time.time())}",
            input_dir=input_dir,
            output_dir=output_dir,
            mode=mode.value,
            scope=str(getattr(scope, "value", scope)),
            uuid=uuid,
            start_time=time.time(),
        )
        self.current_session = session

        session.entries = collect_entries(input_dir)
        hashed = [e for e in session.entries if e.hash_named]
        if not hashed:
            logger.warning("No hash-named files in %s", input_dir)

        extra = []
        if harvest:
            seen = set()
            for entry in session.entries:
                with open(entry.abs_path, "rb") as f:
                    blob = f.read()
                for path in harvest_paths(blob, mode):
                    if path not in seen:
                        seen.add(path)
                        extra.append(path)
            session.harvested = len(extra)
            logger.info("Harvested %d path references from %d files",
                        len(extra), len(session.entries))

        session.mapping = recover_paths(
            (e.digest for e in hashed), template_set, uuid, extra, self.map_config)

        os.makedirs(output_dir, exist_ok=True)

        # Entries that already carry a real path are placed first; a recovered
        # path that lands on one of them keeps its digest name instead
        written = set()
        ordered = sorted(session.entries, key=lambda e: e.hash_named)
        for entry in ordered:
            rel = entry.rel_path
            if entry.hash_named:
                recovered = session.mapping.path_for(entry.digest)
                if recovered and _target_key(recovered) in written:
                    logger.warning("%s maps to %s, which is already taken; keeping digest name",
                                   entry.rel_path, recovered)
                    session.conflicts.append(entry)
                elif recovered:
                    rel = recovered
            target = _safe_target(output_dir, rel)
            written.add(_target_key(rel))
            os.makedirs(os.path.dirname(target), exist_ok=True)
            shutil.copy2(entry.abs_path, target)

        time_path = os.path.join(input_dir, TIME_FILE)
        if os.path.exists(time_path):
            try:
                session.timestamp = read_timestamp(time_path)
            except ValueError as e:
                logger.warning("Ignoring .time file: %s", e)
            else:
                write_timestamp(os.path.join(output_dir, TIME_FILE), session.timestamp)

        session.end_time = time.time()
        logger.info("Mapped %d of %d files into %s in %s",
                    session.mapping.mapped_count, len(hashed), output_dir,
                    session.duration_human)
        return session

    # ── Reports ──

    def export_report_json(self, filepath: str) -> None:
        s = self.current_session
        if not s:
            return
        report = {
            "session_id": s.session_id,
            "summary": s.summary,
            "mapped": {digest_to_name(d): p for d, p in sorted(s.mapping.mapped.items())},
            "not_found": [e.rel_path for e in s.not_found],
            "conflicts": [e.rel_path for e in s.conflicts],
        }
        with open(filepath, "w", encoding="utf-8") as f:
            json.dump(report, f, indent=2)

    def export_report_csv(self, filepath: str) -> None:
        s = self.current_session
        if not s:
            return
        with open(filepath, "w", newline="", encoding="utf-8") as f:
            w = csv.writer(f)
            w.writerow(["Name", "Digest", "Status", "Path"])
            for e in s.entries:
                if not e.hash_named:
                    w.writerow([e.rel_path, e.name, "named", e.rel_path])
                    continue
                path = s.mapping.path_for(e.digest)
                if e in s.conflicts:
                    status = "conflict"
                else:
                    status = "mapped" if path else "not_found"
                w.writerow([e.rel_path, e.name, status, path or ""])
