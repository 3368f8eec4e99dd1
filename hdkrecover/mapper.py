"""
Path Hash Recovery Engine — map hash-named entries back to their paths.

For every candidate path (templates first, then any extra candidates such
as harvested literals) compute the AFS hash and look it up in the pool of
observed digests. A hit records digest -> path and takes the digest out of
the pool, so a digest is reported once even when several candidates hash
to it. Digests nobody produced stay unmapped; the caller reports them under
their original name.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .config import MapConfig
from .errors import ConfigurationError, MissingDisambiguatorError, UnexpectedDisambiguatorError
from .naming import afs_hash, digest_to_name, normalize_path
from .patterns import TemplateSet

logger = logging.getLogger(__name__)

# Home object ids are four 8-digit groups; plain RFC 4122 UUIDs are accepted too
_UUID_RE = re.compile(
    r"^(?:[0-9a-f]{8}(?:-[0-9a-f]{8}){3}"
    r"|[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})$",
    re.IGNORECASE,
)


@dataclass
class PathMapping:
    """Accumulated result of one path recovery run."""
    mapped: dict = field(default_factory=dict)      # digest -> path
    unmapped: set = field(default_factory=set)      # digests nobody produced
    candidates_tried: int = 0
    collisions: int = 0                             # other paths for an already-mapped digest

    @property
    def mapped_count(self) -> int:
        return len(self.mapped)

    def path_for(self, digest: int) -> Optional[str]:
        return self.mapped.get(digest)

    def unmapped_names(self) -> list[str]:
        return sorted(digest_to_name(d) for d in self.unmapped)

    def summary(self) -> dict:
        return {
            "mapped": len(self.mapped),
            "unmapped": len(self.unmapped),
            "candidates_tried": self.candidates_tried,
            "collisions": self.collisions,
        }


def validate_disambiguator(template_set: TemplateSet, disambiguator: Optional[str]) -> Optional[str]:
    """
    Check the UUID against the template set before any search runs.

    Returns the normalised (lowercase) UUID, or None.
    """
    if template_set.requires_disambiguator:
        if not disambiguator:
            raise MissingDisambiguatorError()
        uuid = disambiguator.strip().lower()
        if not _UUID_RE.match(uuid):
            raise ConfigurationError(f"malformed object UUID: {disambiguator!r}")
        return uuid
    if disambiguator and template_set.forbids_disambiguator:
        raise UnexpectedDisambiguatorError()
    return None


def match_candidates(candidates: Iterable[str], pool: set, mapping: PathMapping) -> None:
    """
    Hash candidates and move hits from `pool` into `mapping`.

    `pool` is consumed in place; iteration stops as soon as it is empty.
    """
    mapped = mapping.mapped
    for candidate in candidates:
        if not pool:
            return
        mapping.candidates_tried += 1
        path = normalize_path(candidate)
        digest = afs_hash(path)
        if digest in pool:
            pool.discard(digest)
            mapped[digest] = path
            logger.debug("Mapped %s -> %s", digest_to_name(digest), path)
        elif digest in mapped and mapped[digest] != path:
            mapping.collisions += 1
            logger.debug("Collision on %s: kept %s, ignored %s",
                         digest_to_name(digest), mapped[digest], path)


def recover_paths(
    observed: Iterable[int],
    template_set: TemplateSet,
    disambiguator: Optional[str] = None,
    extra_candidates: Iterable[str] = (),
    config: Optional[MapConfig] = None,
) -> PathMapping:
    """
    Recover original paths for a set of observed digests.

    Raises MissingDisambiguatorError / UnexpectedDisambiguatorError before
    searching. Otherwise always returns a mapping, possibly empty.
    """
    config = config or MapConfig()
    uuid = validate_disambiguator(template_set, disambiguator)
    observed = frozenset(observed)
    mapping = PathMapping()

    if not observed:
        return mapping

    if config.workers != 1:
        from .parallel import run_mapping_parallel
        mapping = run_mapping_parallel(observed, template_set, uuid, config)
        pool = set(observed) - set(mapping.mapped)
    else:
        pool = set(observed)
        match_candidates(template_set.candidates(uuid), pool, mapping)

    match_candidates(extra_candidates, pool, mapping)
    mapping.unmapped = pool

    logger.info("Mapped %d of %d entries (%s set, %d candidates)",
                len(mapping.mapped), len(observed), template_set.mode.value,
                mapping.candidates_tried)
    return mapping
