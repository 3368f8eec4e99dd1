"""
Search configuration — IV spaces, segment-count bound and worker settings.

The bounds here are properties of the target formats, not of the engine.
They live in dataclasses (and can be overridden from a JSON file) so they
can be widened as new format variants turn up.

IV layout
─────────
A candidate IV is the big-endian block-size encoding of

    (high << 32) | low

Home payload IVs are small counters: the high word is fixed per format
(zero for every variant seen so far) and the low word stays well below
0x10000. IVSpace captures exactly that shape.
"""

import json
import logging
from dataclasses import dataclass, field, fields
from typing import Optional

from .errors import ConfigurationError
from .signatures import TypeTag, parse_type

logger = logging.getLogger(__name__)

# Blowfish block size
DEFAULT_BLOCK_SIZE = 8


@dataclass(frozen=True)
class IVSpace:
    """Deterministic IV candidate space for one payload type."""
    high_words: tuple = (0,)
    low_start: int = 0
    low_stop: int = 0x10000         # exclusive

    def __post_init__(self):
        if not self.high_words:
            raise ConfigurationError("IV space needs at least one high word")
        if not 0 <= self.low_start <= self.low_stop <= 0x100000000:
            raise ConfigurationError(
                f"invalid low-word range [{self.low_start:#x}, {self.low_stop:#x})")
        for high in self.high_words:
            if not 0 <= high <= 0xFFFFFFFF:
                raise ConfigurationError(f"high word out of range: {high:#x}")

    def __len__(self) -> int:
        return len(self.high_words) * (self.low_stop - self.low_start)

    @property
    def first(self) -> int:
        return (self.high_words[0] << 32) | self.low_start


def _default_iv_spaces() -> dict:
    return {tag: IVSpace() for tag in TypeTag}


@dataclass
class SearchConfig:
    """Configuration for the keystream search."""
    iv_spaces: dict = field(default_factory=_default_iv_spaces)
    segment_count_min: int = 1
    segment_count_max: int = 512    # inclusive; 512 x 64 KB segments = 32 MB
    block_size: int = DEFAULT_BLOCK_SIZE
    batch_size: int = 4096          # candidates per ECB batch / work unit
    workers: int = 1                # 0 = auto-detect, 1 = in-process
    max_workers: int = 8
    min_candidates_per_worker: int = 1 << 16

    def iv_space(self, tag: TypeTag) -> IVSpace:
        # An empty space is a valid setting (type switched off), so no truthiness test
        space = self.iv_spaces.get(tag)
        return space if space is not None else IVSpace()

    @property
    def segment_counts(self) -> range:
        return range(self.segment_count_min, self.segment_count_max + 1)


@dataclass
class MapConfig:
    """Configuration for path recovery."""
    workers: int = 1                # 0 = auto-detect, 1 = in-process
    max_workers: int = 8
    min_templates_per_worker: int = 4
    harvest: bool = True            # scrape entry contents for path literals


def _as_int(where: str, value) -> int:
    if isinstance(value, bool):
        raise ConfigurationError(f"{where} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{where} must be an integer, got {value!r}") from e


def _section(raw: dict, name: str) -> dict:
    value = raw.get(name, {})
    if not isinstance(value, dict):
        raise ConfigurationError(f"{name} must be an object, got {type(value).__name__}")
    return value


def _parse_iv_space(name: str, raw: dict) -> IVSpace:
    if not isinstance(raw, dict):
        raise ConfigurationError(f"iv_spaces.{name} must be an object")
    known = {"high_words", "low_start", "low_stop"}
    extra = set(raw) - known
    if extra:
        raise ConfigurationError(f"iv_spaces.{name}: unknown keys {sorted(extra)}")
    kwargs = {}
    if "high_words" in raw:
        words = raw["high_words"]
        if not isinstance(words, list):
            raise ConfigurationError(f"iv_spaces.{name}.high_words must be a list")
        kwargs["high_words"] = tuple(_as_int(f"iv_spaces.{name}.high_words", h) for h in words)
    for key in ("low_start", "low_stop"):
        if key in raw:
            kwargs[key] = _as_int(f"iv_spaces.{name}.{key}", raw[key])
    return IVSpace(**kwargs)


def config_from_dict(raw: dict) -> tuple[SearchConfig, MapConfig]:
    """
    Build configs from a plain dict:

        {"search": {"iv_spaces": {"RAW_XML": {"low_stop": 4096}},
                    "segment_count_max": 1024, "workers": 4},
         "map": {"workers": 0, "harvest": false}}
    """
    if not isinstance(raw, dict):
        raise ConfigurationError("configuration must be an object")
    extra = set(raw) - {"search", "map"}
    if extra:
        raise ConfigurationError(f"unknown config sections: {sorted(extra)}")

    search = SearchConfig()
    for key, value in _section(raw, "search").items():
        if key == "iv_spaces":
            if not isinstance(value, dict):
                raise ConfigurationError("search.iv_spaces must be an object")
            spaces = dict(search.iv_spaces)
            for name, space in value.items():
                spaces[parse_type(name)] = _parse_iv_space(name, space)
            search.iv_spaces = spaces
        elif key in {f.name for f in fields(SearchConfig)}:
            setattr(search, key, _as_int(f"search.{key}", value))
        else:
            raise ConfigurationError(f"unknown search setting: {key!r}")
    if search.segment_count_min > search.segment_count_max:
        raise ConfigurationError("segment_count_min exceeds segment_count_max")
    if search.block_size <= 0 or search.batch_size <= 0:
        raise ConfigurationError("block_size and batch_size must be positive")

    mapping = MapConfig()
    for key, value in _section(raw, "map").items():
        if key == "harvest":
            if not isinstance(value, bool):
                raise ConfigurationError(f"map.harvest must be true or false, got {value!r}")
            mapping.harvest = value
        elif key in {f.name for f in fields(MapConfig)}:
            setattr(mapping, key, _as_int(f"map.{key}", value))
        else:
            raise ConfigurationError(f"unknown map setting: {key!r}")
    return search, mapping


def load_config(path: Optional[str]) -> tuple[SearchConfig, MapConfig]:
    """Load configs from a JSON file; defaults when `path` is None."""
    if not path:
        return SearchConfig(), MapConfig()
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"invalid config file {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigurationError(f"config file {path} must hold a JSON object")
    logger.info("Loaded search configuration from %s", path)
    return config_from_dict(raw)
