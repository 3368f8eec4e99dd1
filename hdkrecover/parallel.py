"""
Parallel Search Engine — multiprocessing fan-out for both recovery engines.

PROFESSIONAL APPROACH
─────────────────────
❌ Python threads → GIL blocks true parallelism for CPU-bound hashing.
✅ multiprocessing → one process per worker = true parallelism.

Architecture:
  • Split the candidate space into ordered units and deal them round-robin
    to N worker processes, so every worker walks its units in priority order.
  • Workers share nothing mutable except, for the keystream search, the
    order of the best hit so far. Units ranked after it are abandoned.
  • Results come back on a multiprocessing Queue and one coordinator reduces
    them: lowest order wins (keystream), union keeping the lowest template
    order per digest (paths). Completion order never decides a result.
"""

import os
import time
import logging
import multiprocessing as mp
from multiprocessing import Queue, Process
from dataclasses import dataclass, field
from typing import Optional

from .config import MapConfig, SearchConfig
from .keystream import SearchUnit, search_unit, signature_table
from .mapper import PathMapping
from .naming import afs_hash, normalize_path
from .patterns import TemplateSet
from .signatures import get_signature

logger = logging.getLogger(__name__)


@dataclass
class WorkerResult:
    """Result from a single worker process."""
    worker_id: int
    evaluated: int
    elapsed: float
    # keystream: [(unit order, (iv, segment_count))]; paths: [(digest, path, template order)]
    hits: list = field(default_factory=list)
    collisions: int = 0
    error: Optional[str] = None


def optimal_worker_count(total_work: int, requested: int, max_workers: int,
                         min_per_worker: int) -> int:
    """
    Determine how many worker processes to start.

    Rules:
      • At least 1 worker.
      • Each worker gets at least min_per_worker units of work.
      • Never exceed the CPU count or max_workers.
      • An explicit request (> 0) is honoured up to max_workers.
    """
    if requested > 0:
        return max(1, min(requested, max_workers))
    cpu_count = os.cpu_count() or 2
    max_by_size = max(1, total_work // max(1, min_per_worker))
    return max(1, min(max_by_size, cpu_count, max_workers))


def split_round_robin(items: list, num_workers: int) -> list[list]:
    """Deal items to workers so each worker's share stays in the original order."""
    if num_workers <= 1:
        return [list(items)]
    shares = [items[i::num_workers] for i in range(num_workers)]
    return [s for s in shares if s]


def _collect(procs: list, result_queue: Queue) -> list[WorkerResult]:
    # Drain before join: a child blocks on exit until its queue data is read
    results = [result_queue.get() for _ in procs]
    for p in procs:
        p.join()
    failed = [r for r in results if r.error]
    if failed:
        raise RuntimeError(
            "; ".join(f"worker {r.worker_id}: {r.error}" for r in failed))
    return results


# ══════════════════════════════════════════════════════════════
#  Keystream search
# ══════════════════════════════════════════════════════════════

def _worker_keystream(
    worker_id: int,
    prefix: bytes,
    key: bytes,
    units: list,
    config: SearchConfig,
    best,
    result_queue: Queue,
):
    """
    Worker process: test assigned units until one hits or a better hit
    (lower order) has been published by another worker.
    """
    start_time = time.time()
    evaluated = 0
    hits = []
    try:
        tables = {}
        for unit in units:
            # Units are ascending; once past the best hit, the rest are too
            if unit.order > best.value:
                break
            sig = get_signature(unit.tag)
            if unit.tag not in tables:
                tables[unit.tag] = signature_table(sig, config)
            n, hit = search_unit(
                prefix, key, sig, tables[unit.tag],
                unit.high, unit.low_start, unit.low_stop, config.block_size,
            )
            evaluated += n
            if hit is not None:
                with best.get_lock():
                    if unit.order < best.value:
                        best.value = unit.order
                hits.append((unit.order, hit))
                break
        result_queue.put(WorkerResult(worker_id, evaluated, time.time() - start_time, hits))
    except Exception as e:
        logger.error("Keystream worker %d failed: %s", worker_id, e, exc_info=True)
        result_queue.put(WorkerResult(worker_id, evaluated, time.time() - start_time,
                                      error=repr(e)))


def run_keystream_parallel(prefix: bytes, key: bytes, units: list, config: SearchConfig):
    """
    Fan the keystream search out over worker processes.

    Returns (unit, hit, evaluated) with the same winner the serial search
    would pick, or (None, None, evaluated).
    """
    total = sum(u.size for u in units)
    num_workers = optimal_worker_count(
        total, config.workers, config.max_workers, config.min_candidates_per_worker)
    shares = split_round_robin(units, num_workers)
    logger.debug("Keystream search: %d candidates over %d worker(s)", total, len(shares))

    best = mp.Value("q", len(units))
    result_queue: Queue = mp.Queue()
    procs = [
        Process(target=_worker_keystream,
                args=(i, prefix, key, share, config, best, result_queue),
                daemon=True)
        for i, share in enumerate(shares)
    ]
    for p in procs:
        p.start()
    results = _collect(procs, result_queue)

    evaluated = sum(r.evaluated for r in results)
    all_hits = [h for r in results for h in r.hits]
    if not all_hits:
        return None, None, evaluated
    order, hit = min(all_hits, key=lambda h: h[0])
    unit: SearchUnit = units[order]
    return unit, hit, evaluated


# ══════════════════════════════════════════════════════════════
#  Path recovery
# ══════════════════════════════════════════════════════════════

def _worker_paths(
    worker_id: int,
    observed: frozenset,
    template_set: TemplateSet,
    orders: list,
    uuid: Optional[str],
    result_queue: Queue,
):
    """Worker process: expand the assigned templates and report every hit."""
    start_time = time.time()
    evaluated = 0
    collisions = 0
    hits = []
    try:
        pool = set(observed)
        found = {}
        for order in orders:
            if not pool:
                break
            template = template_set.templates[order]
            for candidate in template.expand(template_set.mode, uuid):
                if not pool:
                    break
                evaluated += 1
                path = normalize_path(candidate)
                digest = afs_hash(path)
                if digest in pool:
                    pool.discard(digest)
                    found[digest] = path
                    hits.append((digest, path, order))
                elif digest in found and found[digest] != path:
                    collisions += 1
        result_queue.put(WorkerResult(worker_id, evaluated, time.time() - start_time,
                                      hits, collisions))
    except Exception as e:
        logger.error("Path worker %d failed: %s", worker_id, e, exc_info=True)
        result_queue.put(WorkerResult(worker_id, evaluated, time.time() - start_time,
                                      error=repr(e)))


def run_mapping_parallel(observed: frozenset, template_set: TemplateSet,
                         uuid: Optional[str], config: MapConfig) -> PathMapping:
    """
    Fan template expansion out over worker processes and union the hits.

    When two workers map the same digest, the template that comes first in
    the set wins, matching the serial walk.
    """
    orders = list(range(len(template_set.templates)))
    num_workers = optimal_worker_count(
        len(orders), config.workers, config.max_workers, config.min_templates_per_worker)
    shares = split_round_robin(orders, num_workers)
    logger.debug("Path recovery: %d templates over %d worker(s)", len(orders), len(shares))

    result_queue: Queue = mp.Queue()
    procs = [
        Process(target=_worker_paths,
                args=(i, observed, template_set, share, uuid, result_queue),
                daemon=True)
        for i, share in enumerate(shares)
    ]
    for p in procs:
        p.start()
    results = _collect(procs, result_queue)

    mapping = PathMapping()
    mapping.candidates_tried = sum(r.evaluated for r in results)
    mapping.collisions = sum(r.collisions for r in results)

    winners: dict = {}
    for digest, path, order in sorted((h for r in results for h in r.hits),
                                      key=lambda h: h[2]):
        if digest not in winners:
            winners[digest] = path
        elif winners[digest] != path:
            mapping.collisions += 1
    mapping.mapped = winners
    return mapping
