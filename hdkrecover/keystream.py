"""
Keystream Search Engine — known-plaintext IV recovery for Blowfish-CTR.

HOW IT WORKS
────────────
In CTR mode block i of the keystream is E_K(iv + i). With the key known,
the only missing piece is the IV, and one correct guess unlocks the whole
payload. So instead of brute-forcing the file we test a short prefix:

  1.  Walk the requested payload types in catalog priority order.
  2.  For each type, walk its IV space (see config.IVSpace).
  3.  Decrypt exactly the signature span under the candidate IV and compare
      it with the signature (exact or tolerant matching).
  4.  Segmented databases also carry an unknown segment count; every
      candidate count is folded into a lookup table, so one decryption per
      IV tests all counts at once.
  5.  The first hit wins. Exhausting every candidate is NO_MATCH, a normal
      outcome rather than an error.

Candidates are evaluated in batches: the counters of consecutive IVs
overlap, so one ECB pass over [base, base + n + blocks - 1] yields the
keystream prefix of n candidates. That is byte-for-byte what MODE_CTR
would produce, just without a key schedule per candidate.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from Crypto.Cipher import Blowfish

from .config import SearchConfig
from .errors import ConfigurationError
from .signatures import (
    MatchMode,
    Signature,
    TypeTag,
    get_signature,
    match_plaintext,
    min_span,
    normalize,
    resolve_types,
)

logger = logging.getLogger(__name__)


class RecoveryStatus(Enum):
    MATCH = "match"
    NO_MATCH = "no-match"
    INPUT_TOO_SHORT = "input-too-short"


@dataclass(frozen=True)
class RecoveryResult:
    """Outcome of one keystream search."""
    status: RecoveryStatus
    matched_type: Optional[TypeTag] = None
    iv: Optional[bytes] = None
    segment_count: Optional[int] = None
    candidates_tried: int = 0       # IV candidates evaluated
    types_tried: tuple = ()

    @property
    def ok(self) -> bool:
        return self.status is RecoveryStatus.MATCH

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "type": self.matched_type.value if self.matched_type else None,
            "iv": self.iv.hex() if self.iv is not None else None,
            "segment_count": self.segment_count,
            "candidates_tried": self.candidates_tried,
            "types_tried": [t.value for t in self.types_tried],
        }


@dataclass(frozen=True)
class SearchUnit:
    """A contiguous slice of one type's IV space; `order` is its global priority."""
    order: int
    tag: TypeTag
    high: int
    low_start: int
    low_stop: int

    @property
    def size(self) -> int:
        return self.low_stop - self.low_start


@dataclass
class AutoResult:
    """Outcome of the auto encrypt/decrypt decision."""
    action: str                     # "encrypt" or "decrypt"
    detected_type: Optional[TypeTag] = None
    iv: Optional[bytes] = None
    segment_count: Optional[int] = None
    output: Optional[bytes] = None  # None when decryption found no IV
    recovery: Optional[RecoveryResult] = None

    @property
    def ok(self) -> bool:
        return self.output is not None


# ─────────────────────────────────────────────────────────────
#  Cipher plumbing
# ─────────────────────────────────────────────────────────────

def check_key(key: bytes) -> None:
    if not isinstance(key, (bytes, bytearray)):
        raise TypeError("key must be bytes")
    if len(key) not in Blowfish.key_size:
        raise ValueError(f"Blowfish key must be 4-56 bytes, got {len(key)}")


def check_block_size(block_size: int) -> None:
    if block_size != Blowfish.block_size:
        raise ConfigurationError(
            f"block size {block_size} does not match Blowfish ({Blowfish.block_size})")


def iv_to_bytes(value: int, block_size: int = Blowfish.block_size) -> bytes:
    return value.to_bytes(block_size, "big")


def _iv_to_int(iv: Union[bytes, int]) -> int:
    if isinstance(iv, int):
        return iv
    if len(iv) != Blowfish.block_size:
        raise ValueError(f"IV must be {Blowfish.block_size} bytes, got {len(iv)}")
    return int.from_bytes(iv, "big")


def ctr_cipher(key: bytes, iv: Union[bytes, int]):
    """Blowfish-CTR with the whole block used as a big-endian counter."""
    check_key(key)
    return Blowfish.new(bytes(key), Blowfish.MODE_CTR, nonce=b"", initial_value=_iv_to_int(iv))


def decrypt(ciphertext: bytes, key: bytes, iv: Union[bytes, int]) -> bytes:
    return ctr_cipher(key, iv).decrypt(bytes(ciphertext))


def encrypt(plaintext: bytes, key: bytes, iv: Union[bytes, int]) -> bytes:
    return ctr_cipher(key, iv).encrypt(bytes(plaintext))


# ─────────────────────────────────────────────────────────────
#  Search core
# ─────────────────────────────────────────────────────────────

def search_unit(
    prefix: bytes,
    key: bytes,
    sig: Signature,
    table: dict,
    high: int,
    low_start: int,
    low_stop: int,
    block_size: int = Blowfish.block_size,
):
    """
    Test every IV in one contiguous low-word range against `sig`.

    Returns (evaluated, hit) where hit is (iv_int, segment_count) for the
    lowest matching IV, or None.
    """
    count = low_stop - low_start
    if count <= 0:
        return 0, None

    span = sig.span
    blocks = -(-span // block_size)
    mask = (1 << (8 * block_size)) - 1
    base = (high << 32) | low_start

    counters = b"".join(
        ((base + i) & mask).to_bytes(block_size, "big")
        for i in range(count + blocks - 1)
    )
    stream = Blowfish.new(bytes(key), Blowfish.MODE_ECB).encrypt(counters)

    target = int.from_bytes(prefix[:span], "big")
    offset = sig.offset
    tolerant = sig.mode is MatchMode.TOLERANT

    for i in range(count):
        pos = i * block_size
        ks = int.from_bytes(stream[pos:pos + span], "big")
        window = (target ^ ks).to_bytes(span, "big")[offset:]
        if tolerant:
            window = normalize(window, MatchMode.TOLERANT)
        if window in table:
            return i + 1, ((base + i) & mask, table[window])
    return count, None


def signature_table(sig: Signature, config: SearchConfig) -> dict:
    if sig.segmented:
        return sig.expand(config.segment_counts)
    return sig.expand()


def plan_units(signatures: list, config: SearchConfig, available: int) -> list[SearchUnit]:
    """
    Split the candidate space of every searchable type into ordered units.

    Types whose signature span does not fit in `available` ciphertext bytes
    can never match and are left out.
    """
    units = []
    for sig in signatures:
        if sig.span > available:
            logger.debug("Skipping %s: needs %d bytes, have %d",
                         sig.tag.value, sig.span, available)
            continue
        space = config.iv_space(sig.tag)
        for high in space.high_words:
            for start in range(space.low_start, space.low_stop, config.batch_size):
                stop = min(start + config.batch_size, space.low_stop)
                units.append(SearchUnit(len(units), sig.tag, high, start, stop))
    return units


def _run_serial(prefix, key, units, tables, config):
    tried = 0
    for unit in units:
        sig = get_signature(unit.tag)
        evaluated, hit = search_unit(
            prefix, key, sig, tables[unit.tag],
            unit.high, unit.low_start, unit.low_stop, config.block_size,
        )
        tried += evaluated
        if hit is not None:
            return unit, hit, tried
    return None, None, tried


def recover(
    ciphertext: bytes,
    key: bytes,
    requested="all",
    config: Optional[SearchConfig] = None,
) -> RecoveryResult:
    """
    Find the payload type and IV that turn `ciphertext` into a known signature.

    `requested` is "all", a TypeTag, a type name or a collection of them;
    types are always tried in catalog priority order.
    """
    config = config or SearchConfig()
    check_key(key)
    check_block_size(config.block_size)
    signatures = resolve_types(requested)
    types = tuple(sig.tag for sig in signatures)

    if len(ciphertext) < config.block_size or len(ciphertext) < min_span(signatures):
        logger.info("Input too short for %s (%d bytes)",
                    ", ".join(t.value for t in types), len(ciphertext))
        return RecoveryResult(RecoveryStatus.INPUT_TOO_SHORT, types_tried=types)

    longest = max(sig.span for sig in signatures)
    prefix = bytes(ciphertext[:longest])
    units = plan_units(signatures, config, len(ciphertext))
    searched = tuple(t for t in types if any(u.tag is t for u in units))
    tables = {sig.tag: signature_table(sig, config) for sig in signatures if sig.tag in searched}

    if config.workers != 1:
        from .parallel import run_keystream_parallel
        unit, hit, tried = run_keystream_parallel(prefix, key, units, config)
    else:
        unit, hit, tried = _run_serial(prefix, key, units, tables, config)

    if hit is None:
        logger.info("No IV found after %d candidates (%s)",
                    tried, ", ".join(t.value for t in searched))
        return RecoveryResult(RecoveryStatus.NO_MATCH, candidates_tried=tried, types_tried=searched)

    iv_value, segment_count = hit
    logger.info("Matched %s with IV %016X%s", unit.tag.value, iv_value,
                f" ({segment_count} segments)" if segment_count is not None else "")
    return RecoveryResult(
        RecoveryStatus.MATCH,
        matched_type=unit.tag,
        iv=iv_to_bytes(iv_value, config.block_size),
        segment_count=segment_count,
        candidates_tried=tried,
        types_tried=searched,
    )


def recover_and_decrypt(ciphertext: bytes, key: bytes, requested="all",
                        config: Optional[SearchConfig] = None):
    """Search for the IV, then decrypt the full payload only if one was found."""
    result = recover(ciphertext, key, requested, config)
    if not result.ok:
        return result, None
    return result, decrypt(ciphertext, key, result.iv)


def auto(data: bytes, key: bytes, config: Optional[SearchConfig] = None,
         iv: Optional[bytes] = None) -> AutoResult:
    """
    Decide between encrypting and decrypting `data`.

    Plaintext-looking input is encrypted, with `iv` or else the first
    candidate of the detected type's IV space (so a later search finds it).
    Anything else goes through the full keystream search and is decrypted.
    """
    config = config or SearchConfig()
    check_key(key)

    detected = match_plaintext(data, "all", config.segment_counts)
    if detected is not None:
        sig, segment_count = detected
        if iv is None:
            iv = iv_to_bytes(config.iv_space(sig.tag).first, config.block_size)
        logger.info("Input is plaintext %s, encrypting", sig.tag.value)
        return AutoResult(
            action="encrypt",
            detected_type=sig.tag,
            iv=bytes(iv),
            segment_count=segment_count,
            output=encrypt(data, key, iv),
        )

    result, plaintext = recover_and_decrypt(data, key, "all", config)
    return AutoResult(
        action="decrypt",
        detected_type=result.matched_type,
        iv=result.iv,
        segment_count=result.segment_count,
        output=plaintext,
        recovery=result,
    )
