"""
Job orchestration for derived streams.

Two stages with a shuffle in between:
  1. decode  - one task per partition group: fetch each blob, decode frames to pings
  2. build   - group pings by client, sort, build rows, write and upload Parquet

Decoding must finish for every group before any client is assembled, since one
client's pings can come from several groups.
"""

from __future__ import annotations
import logging
import multiprocessing
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator, List, Tuple, TypeVar

from .config import ConverterConfig
from .heka import Ping, decode_blob
from .histograms import load_registry
from .io.storage import BlobStore, build_blob_store
from .io.writer import ParquetSerializer, write_and_upload
from .metadata import SourcesManifest
from .partitioning import ObjectDescriptor, group_by_size
from .records import BuildStats, build_records
from .schema import build_schema
from .sessions import ClientSession, assemble_sessions, shard_sessions
from .streams import DerivedStream, date_range

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class OutputPartitionExistsError(RuntimeError):
    """Raised when the output partition of a job already holds data."""


@dataclass
class JobSummary:
    groups: int = 0
    objects: int = 0
    pings: int = 0
    sessions: int = 0
    built: int = 0
    discarded: int = 0
    files: List[str] = field(default_factory=list)


def decode_group(store: BlobStore, group: List[ObjectDescriptor]) -> List[Ping]:
    """
    Decode every blob of a partition group.

    A missing blob raises `ObjectNotFoundError` and fails the whole group.
    """
    pings: List[Ping] = []
    for descriptor in group:
        with store.open(descriptor.key) as stream:
            pings.extend(decode_blob(stream, descriptor.key))
    return pings


def build_shard(
    sessions: Iterable[ClientSession],
    cfg: ConverterConfig,
    output_root: str,
    output_prefix: str,
    shard_index: int,
) -> Tuple[BuildStats, List[str]]:
    """Build, write and upload the rows of one shard of client sessions."""
    registry = load_registry(cfg.histograms_path)
    schema = build_schema(registry)
    serializer = ParquetSerializer(
        schema,
        cfg.writer.local_dir / f"shard-{shard_index:04d}",
        max_file_bytes=cfg.writer.max_file_bytes,
        row_group_rows=cfg.writer.row_group_rows,
    )
    stats = BuildStats()
    rows = build_records(sessions, schema, registry, stats)
    uploaded = write_and_upload(rows, serializer, build_blob_store(output_root), output_prefix)
    return stats, uploaded


# ── Pool workers: top-level so they pickle under spawn ──────────────────────────
def _decode_worker(args: Tuple[str, List[ObjectDescriptor]]) -> List[Ping]:
    input_root, group = args
    return decode_group(build_blob_store(input_root), group)


def _build_worker(
    args: Tuple[List[ClientSession], ConverterConfig, str, str, int]
) -> Tuple[BuildStats, List[str]]:
    return build_shard(*args)


def _run_tasks(
    func: Callable[[T], R], tasks: List[T], num_workers: int, ordered: bool = True
) -> Iterator[R]:
    if num_workers <= 1 or len(tasks) <= 1:
        for task in tasks:
            yield func(task)
        return
    with multiprocessing.Pool(processes=min(num_workers, len(tasks))) as pool:
        results = pool.imap(func, tasks) if ordered else pool.imap_unordered(func, tasks)
        for result in results:
            yield result


def list_inputs(
    stream: DerivedStream, cfg: ConverterConfig, dates: List[str]
) -> List[ObjectDescriptor]:
    """List the raw blobs of `stream` for every day in `dates`, in listing order."""
    manifest = SourcesManifest.load(build_blob_store(cfg.storage.metadata_root))
    source_prefix = manifest.prefix_for(stream.stream_name)
    input_store = build_blob_store(cfg.storage.input_root)
    descriptors: List[ObjectDescriptor] = []
    for prefix in stream.input_prefixes(source_prefix, dates):
        descriptors.extend(input_store.list_objects(prefix))
    return descriptors


def run_stream(
    stream: DerivedStream, cfg: ConverterConfig, from_date: str, to_date: str
) -> JobSummary:
    """
    Run a derived stream over the inclusive day range `from_date`..`to_date`.

    Raises
    ------
    OutputPartitionExistsError
        If `<stream>/generationDate=<to_date>` already has output; raised
        before any input is read.
    """
    dates = date_range(from_date, to_date)
    output_root = cfg.storage.resolved_output_root()
    output_prefix = stream.output_prefix(to_date)

    # ── 1) Idempotency ────────────────────────────────────────────────────────
    if not build_blob_store(output_root).is_prefix_empty(output_prefix):
        logger.warning("Warning: prefix %s already exists in %s!", output_prefix, output_root)
        raise OutputPartitionExistsError(output_prefix)

    # Fail fast on a bad registry before touching any input
    build_schema(load_registry(cfg.histograms_path))

    summary = JobSummary()
    start = time.perf_counter()

    # ── 2) Plan ───────────────────────────────────────────────────────────────
    descriptors = list_inputs(stream, cfg, dates)
    groups = group_by_size(descriptors, cfg.partition_threshold)
    summary.objects = len(descriptors)
    summary.groups = len(groups)
    logger.info(
        "Planned %d objects into %d partition groups (parallelism %d)",
        summary.objects,
        summary.groups,
        cfg.num_workers,
    )

    # ── 3) Decode ─────────────────────────────────────────────────────────────
    pings: List[Ping] = []
    tasks = [(cfg.storage.input_root, group) for group in groups]
    for done, group_pings in enumerate(_run_tasks(_decode_worker, tasks, cfg.num_workers), 1):
        pings.extend(group_pings)
        logger.info(
            "Group done: %d pings, %d/%d groups in %.2f s",
            len(group_pings),
            done,
            summary.groups,
            time.perf_counter() - start,
        )
    summary.pings = len(pings)

    # ── 4) Shuffle + assemble ─────────────────────────────────────────────────
    sessions = list(assemble_sessions(pings))
    del pings
    summary.sessions = len(sessions)
    n_shards = max(cfg.num_workers // 2, 1)
    shards = [shard for shard in shard_sessions(sessions, n_shards) if shard]
    logger.info("Assembled %d client sessions into %d shards", summary.sessions, len(shards))

    # ── 5) Build + write ──────────────────────────────────────────────────────
    build_tasks = [
        (shard, cfg, output_root, output_prefix, index) for index, shard in enumerate(shards)
    ]
    for stats, uploaded in _run_tasks(_build_worker, build_tasks, n_shards, ordered=False):
        summary.built += stats.built
        summary.discarded += stats.discarded
        summary.files.extend(uploaded)
        logger.info(
            "Shard done: %d rows built, %d clients discarded, %d files",
            stats.built,
            stats.discarded,
            len(uploaded),
        )

    logger.info(
        "Stream %s done: %d rows in %d files (%d clients discarded) in %.2f s",
        stream.name,
        summary.built,
        len(summary.files),
        summary.discarded,
        time.perf_counter() - start,
    )
    return summary
