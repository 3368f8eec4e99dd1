"""
Plaintext Signature Catalog — known prefixes of PlayStation Home payloads.

DESIGN RATIONALE
────────────────
Encrypted Home payloads never carry their IV, but every payload type starts
with a predictable header. The catalog maps each payload type to the bytes
expected at a fixed plaintext offset:

  • XML documents        (with and without a UTF-8 byte-order mark)
  • Scene lists          (text, tolerant to case / whitespace variants)
  • Compiled Lua chunks  (ESC "Lua")
  • BAR archives         (archive magic in either byte order)
  • PEM certificates     ("-----BEGIN")
  • Segmented databases  ("segs" + version + segment count)

CATALOG is ordered: the keystream search and the plaintext pre-check both
walk it front to back and accept the first hit. More specific signatures
come first (BOM-XML before RawXML, since RawXML is BOM-XML minus the BOM).

Exported:
  • TypeTag, MatchMode, Signature
  • CATALOG            — ordered list of Signature
  • get_signature / parse_type / resolve_types / min_span / match_plaintext
"""

import struct
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Union

from .errors import ConfigurationError


class TypeTag(Enum):
    BOM_XML = "BOM-XML"
    RAW_XML = "RawXML"
    SCENELIST_XML = "SceneListXML"
    LUA_SCRIPT = "LuaScript"
    BAR_MAGIC = "BarMagic"
    PEM_HEADER = "PemHeader"
    SEGMENTED_DB = "SegmentedDB"


class MatchMode(Enum):
    EXACT = "exact"
    # ASCII case-insensitive, any whitespace byte matches any other
    TOLERANT = "tolerant"


_WHITESPACE = b"\t\n\x0b\x0c\r "
_TOLERANT_TABLE = bytes.maketrans(
    b"ABCDEFGHIJKLMNOPQRSTUVWXYZ" + _WHITESPACE,
    b"abcdefghijklmnopqrstuvwxyz" + b" " * len(_WHITESPACE),
)


def normalize(data: bytes, mode: MatchMode) -> bytes:
    """Fold bytes into the canonical form compared under `mode`."""
    if mode is MatchMode.TOLERANT:
        return bytes(data).translate(_TOLERANT_TABLE)
    return bytes(data)


@dataclass(frozen=True)
class Signature:
    """Describes one plaintext type the keystream search can recognise."""
    tag: TypeTag
    description: str
    patterns: tuple                 # equal-length alternates
    offset: int = 0
    mode: MatchMode = MatchMode.EXACT
    # Segmented payloads append a big-endian u16 segment count to the pattern
    segmented: bool = False

    def __post_init__(self):
        if not self.patterns:
            raise ValueError(f"{self.tag.name}: signature needs a pattern")
        lengths = {len(p) for p in self.patterns}
        if len(lengths) != 1:
            raise ValueError(f"{self.tag.name}: alternates must share a length")

    @property
    def length(self) -> int:
        return len(self.patterns[0]) + (2 if self.segmented else 0)

    @property
    def span(self) -> int:
        """Plaintext bytes that must be decrypted to test this signature."""
        return self.offset + self.length

    def expand(self, segment_counts: Optional[Iterable[int]] = None) -> dict:
        """
        Build the lookup table {normalized bytes: segment_count or None}.

        Non-segmented signatures map each alternate to None. Segmented ones
        produce one entry per segment count, in ascending count order.
        """
        table: dict[bytes, Optional[int]] = {}
        if not self.segmented:
            for pattern in self.patterns:
                table.setdefault(normalize(pattern, self.mode), None)
            return table

        if segment_counts is None:
            raise ValueError(f"{self.tag.name}: segment counts required")
        for count in segment_counts:
            if not 0 <= count <= 0xFFFF:
                raise ValueError(f"segment count out of range: {count}")
            for pattern in self.patterns:
                key = normalize(pattern + struct.pack(">H", count), self.mode)
                table.setdefault(key, count)
        return table

    def matches(self, plaintext: bytes, table: Optional[dict] = None):
        """
        Test decrypted bytes against this signature.

        Returns (True, segment_count) on a hit, (False, None) otherwise.
        Segmented signatures need a `table` from expand().
        """
        window = plaintext[self.offset:self.span]
        if len(window) < self.length:
            return False, None
        if table is None:
            table = self.expand()
        key = normalize(window, self.mode)
        if key in table:
            return True, table[key]
        return False, None


# ══════════════════════════════════════════════════════════════
#  C A T A L O G
# ══════════════════════════════════════════════════════════════

# Archive magic 0xADEF17E1, stored in the archive's own byte order
ARCHIVE_MAGIC = 0xADEF17E1

# EdgeLZMA segmented stream header version used by Home databases
SEGS_MAGIC = b"segs"
SEGS_VERSION = 0x0001

# ── XML with UTF-8 BOM ──
SIG_BOM_XML = Signature(
    tag=TypeTag.BOM_XML,
    description="XML document (UTF-8 BOM)",
    patterns=(b"\xEF\xBB\xBF<?xml",),
)

# ── Scene list ──  (hand-edited files vary in case and spacing)
SIG_SCENELIST_XML = Signature(
    tag=TypeTag.SCENELIST_XML,
    description="Scene list XML",
    patterns=(b"<SCENELIST",),
    mode=MatchMode.TOLERANT,
)

# ── XML without BOM ──
SIG_RAW_XML = Signature(
    tag=TypeTag.RAW_XML,
    description="XML document",
    patterns=(b"<?xml",),
)

# ── Compiled Lua ──
SIG_LUA_SCRIPT = Signature(
    tag=TypeTag.LUA_SCRIPT,
    description="Compiled Lua chunk",
    patterns=(b"\x1bLua",),
)

# ── BAR archive ──  (little- or big-endian header)
SIG_BAR_MAGIC = Signature(
    tag=TypeTag.BAR_MAGIC,
    description="BAR archive",
    patterns=(
        struct.pack("<I", ARCHIVE_MAGIC),
        struct.pack(">I", ARCHIVE_MAGIC),
    ),
)

# ── PEM certificate / key ──
SIG_PEM_HEADER = Signature(
    tag=TypeTag.PEM_HEADER,
    description="PEM certificate",
    patterns=(b"-----BEGIN",),
)

# ── Segmented database ──  (segment count is unknown and searched)
SIG_SEGMENTED_DB = Signature(
    tag=TypeTag.SEGMENTED_DB,
    description="Segmented database (EdgeLZMA)",
    patterns=(SEGS_MAGIC + struct.pack(">H", SEGS_VERSION),),
    segmented=True,
)

CATALOG: list[Signature] = [
    SIG_BOM_XML,
    SIG_SCENELIST_XML,
    SIG_RAW_XML,
    SIG_LUA_SCRIPT,
    SIG_BAR_MAGIC,
    SIG_PEM_HEADER,
    SIG_SEGMENTED_DB,
]

_BY_TAG = {sig.tag: sig for sig in CATALOG}


# ═════════════════════════════════════════════════════════════
#  Convenience helpers
# ═════════════════════════════════════════════════════════════

def get_signature(tag: TypeTag) -> Signature:
    return _BY_TAG[tag]


def parse_type(text: str) -> TypeTag:
    """Parse 'RAW_XML', 'RawXML', 'raw-xml' or 'BOM-XML' style names."""
    wanted = text.strip().lower().replace("-", "").replace("_", "")
    for tag in TypeTag:
        for name in (tag.name, tag.value):
            if name.lower().replace("-", "").replace("_", "") == wanted:
                return tag
    raise ConfigurationError(f"unknown plaintext type: {text!r}")


def resolve_types(requested: Union[str, TypeTag, Iterable, None] = "all") -> list[Signature]:
    """
    Turn a request ("all", a tag, a name or a collection of them) into
    signatures ordered by catalog priority, whatever order they were given in.
    """
    if requested is None or (isinstance(requested, str) and requested.lower() == "all"):
        return list(CATALOG)
    if isinstance(requested, (str, TypeTag)):
        requested = [requested]
    tags = set()
    for item in requested:
        tags.add(item if isinstance(item, TypeTag) else parse_type(item))
    if not tags:
        raise ConfigurationError("no plaintext types requested")
    return [sig for sig in CATALOG if sig.tag in tags]


def min_span(signatures: Iterable[Signature]) -> int:
    return min(sig.span for sig in signatures)


def match_plaintext(data: bytes, requested=None, segment_counts: Optional[Iterable[int]] = None):
    """
    Check whether `data` already looks like unencrypted plaintext.

    Returns (Signature, segment_count) for the first catalog entry that
    matches at its offset, or None.
    """
    counts = list(segment_counts) if segment_counts is not None else None
    for sig in resolve_types(requested):
        if len(data) < sig.span:
            continue
        if sig.segmented:
            if counts is None:
                continue
            table = sig.expand(counts)
        else:
            table = None
        hit, count = sig.matches(data, table)
        if hit:
            return sig, count
    return None
