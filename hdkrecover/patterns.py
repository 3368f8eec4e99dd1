"""
Pattern Template Set — candidate path generation for reverse-hash mapping.

DESIGN RATIONALE
────────────────
Hash-named entries can only be mapped back by guessing their original path
and hashing the guess. Guesses come from two places:

  • Templates   — path shapes with placeholders, e.g.
                  "objects/{uuid}/textures/texture{index:02d}.dds"
                    {uuid}   object UUID (object-scoped templates only)
                    {name}   one of a literal name list
                    {index}  an integer below the template's bound
  • Harvesting  — path literals referenced inside the entries themselves
                  (XML resource lists, Lua requires, ...).

Every template has a "fast" and a "full" expansion. Full only ever adds:
more names, a wider index range, or whole templates marked full_only.
Template enforces this at construction, so anything the fast set produces
the full set produces too.

Expansion is lazy: TemplateSet.candidates() returns a fresh generator on
every call and never materialises the candidate universe.
"""

import re
import string
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Optional

from .naming import normalize_path


class Scope(Enum):
    OBJECT = "object"       # needs an object UUID
    SCENE = "scene"         # never takes a UUID
    COMMON = "common"       # shared by both


class SetMode(Enum):
    FAST = "fast"
    FULL = "full"


def parse_mode(value) -> SetMode:
    if isinstance(value, SetMode):
        return value
    if isinstance(value, bool):
        return SetMode.FULL if value else SetMode.FAST
    return SetMode(str(value).lower())


def parse_scope(value) -> Scope:
    if isinstance(value, Scope):
        return value
    return Scope(str(value).lower())


_FORMATTER = string.Formatter()
_PLACEHOLDERS = {"uuid", "name", "index"}


@dataclass(frozen=True)
class Template:
    """One path shape and its placeholder bindings."""
    pattern: str
    scope: Scope = Scope.COMMON
    names: tuple = ()
    extra_names: tuple = ()         # full set only
    index_start: int = 0
    index_stop: int = 0             # fast bound (exclusive)
    full_index_stop: int = 0        # full bound, never below index_stop
    full_only: bool = False

    def __post_init__(self):
        fields = self.placeholders
        unknown = fields - _PLACEHOLDERS
        if unknown:
            raise ValueError(f"{self.pattern!r}: unknown placeholders {sorted(unknown)}")
        if ("uuid" in fields) != (self.scope is Scope.OBJECT):
            raise ValueError(f"{self.pattern!r}: {{uuid}} must appear exactly in object templates")
        if "name" in fields and not (self.names or self.extra_names):
            raise ValueError(f"{self.pattern!r}: {{name}} needs a name list")
        if "index" in fields and max(self.index_stop, self.full_index_stop) <= self.index_start:
            raise ValueError(f"{self.pattern!r}: {{index}} needs an index bound")
        if self.full_index_stop < self.index_stop:
            object.__setattr__(self, "full_index_stop", self.index_stop)

    @property
    def placeholders(self) -> set:
        return {field for _, field, _, _ in _FORMATTER.parse(self.pattern) if field}

    def expand(self, mode: SetMode, uuid: Optional[str] = None) -> Iterator[str]:
        """Yield candidate paths for this template, in a fixed order."""
        if self.full_only and mode is SetMode.FAST:
            return
        fields = self.placeholders
        full = mode is SetMode.FULL

        if "name" in fields:
            names = self.names + (self.extra_names if full else ())
        else:
            names = (None,)
        if "index" in fields:
            indices = range(self.index_start, self.full_index_stop if full else self.index_stop)
        else:
            indices = (None,)

        for name in names:
            for index in indices:
                yield self.pattern.format(uuid=uuid, name=name, index=index)

    def count(self, mode: SetMode) -> int:
        if self.full_only and mode is SetMode.FAST:
            return 0
        full = mode is SetMode.FULL
        fields = self.placeholders
        n = 1
        if "name" in fields:
            n *= len(self.names) + (len(self.extra_names) if full else 0)
        if "index" in fields:
            n *= max(0, (self.full_index_stop if full else self.index_stop) - self.index_start)
        return n


@dataclass(frozen=True)
class TemplateSet:
    """An ordered selection of templates expanded in one mode."""
    templates: tuple
    mode: SetMode = SetMode.FAST

    @property
    def requires_disambiguator(self) -> bool:
        return any(t.scope is Scope.OBJECT for t in self.templates)

    @property
    def forbids_disambiguator(self) -> bool:
        return not self.requires_disambiguator

    def candidates(self, uuid: Optional[str] = None) -> Iterator[str]:
        for template in self.templates:
            yield from template.expand(self.mode, uuid)

    def size(self) -> int:
        return sum(t.count(self.mode) for t in self.templates)


# ══════════════════════════════════════════════════════════════
#  B U I L T - I N   T E M P L A T E S
# ══════════════════════════════════════════════════════════════

_TEXTURE_NAMES = ("diffuse", "normal", "specular", "lightmap", "icon")
_TEXTURE_NAMES_EXTRA = ("emissive", "mask", "detail", "reflection", "glow",
                        "alpha", "shadow", "environment", "bump", "atlas")
_SCRIPT_NAMES = ("main", "init", "object")
_SCRIPT_NAMES_EXTRA = ("ui", "utils", "config", "data", "events", "network",
                       "game", "menu", "player", "state", "sound", "timer")

COMMON_TEMPLATES = (
    Template("{name}", Scope.COMMON,
             names=("resources.xml", "localisation.xml", "config.xml", "files.txt"),
             extra_names=("readme.txt", "version.txt", "manifest.xml", "settings.xml")),
    Template("scripts/{name}.lua", Scope.COMMON,
             names=_SCRIPT_NAMES, extra_names=_SCRIPT_NAMES_EXTRA),
    Template("localisation/{name}.xml", Scope.COMMON,
             names=("en-gb", "en-us"),
             extra_names=("fr-fr", "de-de", "it-it", "es-es", "ja-jp", "ko-kr", "zh-tw")),
)

OBJECT_TEMPLATES = (
    Template("objects/{uuid}/{name}", Scope.OBJECT,
             names=("object.xml", "resources.xml", "localisation.xml",
                    "catalogueentry.xml", "object.odc", "large.png", "small.png"),
             extra_names=("thumbnail.png", "editor.xml", "validation.xml",
                          "description.xml", "readme.txt", "object.hkx")),
    Template("objects/{uuid}/{name}.lua", Scope.OBJECT,
             names=_SCRIPT_NAMES, extra_names=_SCRIPT_NAMES_EXTRA),
    Template("objects/{uuid}/{name}.mdl", Scope.OBJECT,
             names=("object", "model"), extra_names=("lod1", "lod2", "collision")),
    Template("objects/{uuid}/{name}.dds", Scope.OBJECT,
             names=_TEXTURE_NAMES, extra_names=_TEXTURE_NAMES_EXTRA),
    Template("objects/{uuid}/textures/texture{index:02d}.dds", Scope.OBJECT,
             index_stop=16, full_index_stop=100),
    Template("objects/{uuid}/scripts/{name}.lua", Scope.OBJECT,
             names=_SCRIPT_NAMES, extra_names=_SCRIPT_NAMES_EXTRA, full_only=True),
    Template("objects/{uuid}/textures/{name}.dds", Scope.OBJECT,
             names=_TEXTURE_NAMES + _TEXTURE_NAMES_EXTRA, full_only=True),
    Template("objects/{uuid}/animations/anim{index:02d}.hkx", Scope.OBJECT,
             index_stop=100, full_only=True),
)

SCENE_TEMPLATES = (
    Template("{name}", Scope.SCENE,
             names=("scene.scene", "scenelist.xml", "screens.xml", "navigation.xml"),
             extra_names=("lighting.xml", "effects.xml", "audio.xml", "collision.hkx")),
    Template("textures/texture{index:03d}.dds", Scope.SCENE,
             index_stop=64, full_index_stop=512),
    Template("models/model{index:03d}.mdl", Scope.SCENE,
             index_stop=64, full_index_stop=512),
    Template("screens/screen{index:02d}.xml", Scope.SCENE,
             index_stop=16, full_index_stop=100),
    Template("sounds/{name}.bnk", Scope.SCENE,
             names=("ambient", "music"), extra_names=("effects", "voice", "ui")),
    Template("lighting/lightmap{index:03d}.dds", Scope.SCENE,
             index_stop=256, full_only=True),
    Template("collision/collision{index:02d}.hkx", Scope.SCENE,
             index_stop=64, full_only=True),
)


def select_templates(mode="fast", scope="scene") -> TemplateSet:
    """Built-in template set for a scope, expanded in `mode`."""
    scope = parse_scope(scope)
    if scope is Scope.OBJECT:
        templates = OBJECT_TEMPLATES + COMMON_TEMPLATES
    elif scope is Scope.SCENE:
        templates = SCENE_TEMPLATES + COMMON_TEMPLATES
    else:
        templates = COMMON_TEMPLATES
    return TemplateSet(templates, parse_mode(mode))


# ══════════════════════════════════════════════════════════════
#  C O N T E N T   H A R V E S T I N G
# ══════════════════════════════════════════════════════════════

_EXTENSIONS = (
    "xml|lua|luac|dds|png|jpg|jpeg|mdl|hkx|anim|skn|bnk|efx|scene|ttf|txt|"
    "odc|sdc|bar|sdat|sql|wav|mp3|ogg|mp4|atmos|cer|der|pem|json"
)

# Resource references carry one of these roots in Home XML
_ROOT_PREFIXES = (
    "file:///resource_root/build/",
    "file://resource_root/build/",
    "resource_root/build/",
    "file:///",
    "file://",
)

_FAST_PATTERNS = (
    re.compile(r"[\"'>]([\w\-./\\: ]+?\.(?:%s))[\"'<]" % _EXTENSIONS, re.IGNORECASE),
)
_FULL_PATTERNS = _FAST_PATTERNS + (
    re.compile(r"(?<![\w\-./\\])([\w\-]+(?:[/\\][\w\-.]+)*\.(?:%s))\b" % _EXTENSIONS, re.IGNORECASE),
    re.compile(r"require\s*\(?\s*[\"']([\w\-./]+)[\"']", re.IGNORECASE),
)


def clean_reference(ref: str) -> str:
    """Strip resource roots and normalise separators / case."""
    path = normalize_path(ref.strip())
    for prefix in _ROOT_PREFIXES:
        if path.startswith(prefix):
            path = path[len(prefix):]
            break
    path = path.lstrip("/")
    # Drive letters and parent hops never name an archive entry
    if ":" in path or ".." in path.split("/"):
        return ""
    return path


def harvest_paths(blob: bytes, mode="fast") -> Iterator[str]:
    """
    Yield path literals referenced in `blob`, each at most once.

    Full mode runs a wider regex set and also yields every trailing
    sub-path ("a/b/c.xml" -> "b/c.xml", "c.xml"), so its output always
    contains the fast output.
    """
    mode = parse_mode(mode)
    text = bytes(blob).decode("latin-1")
    patterns = _FULL_PATTERNS if mode is SetMode.FULL else _FAST_PATTERNS
    seen = set()
    for regex in patterns:
        for match in regex.finditer(text):
            path = clean_reference(match.group(1))
            if not path:
                continue
            variants = [path]
            if mode is SetMode.FULL:
                if regex.pattern.startswith("require") and not path.endswith(".lua"):
                    variants = [path.replace(".", "/") + ".lua", path]
                parts = path.split("/")
                variants += ["/".join(parts[i:]) for i in range(1, len(parts))]
            for candidate in variants:
                if candidate not in seen:
                    seen.add(candidate)
                    yield candidate
