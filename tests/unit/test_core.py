import json
from pathlib import Path

import polars as pl
import pytest

from telemetry_batch_view.converter.config import (  # type: ignore
    ConverterConfig,
    StorageConfig,
    WriterConfig,
)
from telemetry_batch_view.converter.core import (  # type: ignore
    OutputPartitionExistsError,
    decode_group,
    run_stream,
)
from telemetry_batch_view.converter.io.storage import (  # type: ignore
    LocalBlobStore,
    ObjectNotFoundError,
)
from telemetry_batch_view.converter.partitioning import ObjectDescriptor  # type: ignore
from telemetry_batch_view.converter.streams import LONGITUDINAL  # type: ignore

HISTOGRAMS_PATH = Path(__file__).resolve().parents[2] / "project_config" / "histograms.json"
SUBMISSION = "telemetry/4/main/Firefox/release/42.0/20151029/nightly/42"


def _setup(tmp_path, blob_writer, ping_factory, hist, num_workers=1):
    raw = tmp_path / "raw"
    meta = tmp_path / "meta"
    meta.mkdir()
    (meta / "sources.json").write_text(
        json.dumps({"telemetry-release": {"prefix": "telemetry-2", "metadata_prefix": "m"}})
    )
    blob_writer(
        raw,
        f"telemetry-2/20151201/{SUBMISSION}/blob-a",
        [
            ping_factory("alice", 2.0, histograms={"GC_MS": hist({10: 1}, 10)}),
            ping_factory("bob", 1.0, histograms={"GC_MS": hist({12: 2}, 24)}),
        ],
    )
    blob_writer(
        raw,
        f"telemetry-2/20151202/{SUBMISSION}/blob-b",
        [
            ping_factory("alice", 1.0),
            ping_factory("carol", 5.0, histograms="not used"),
            ping_factory("dave", "unsortable"),
        ],
    )
    # wrong channel: filtered out by the stream's prefix
    blob_writer(
        raw,
        "telemetry-2/20151201/telemetry/4/main/Firefox/beta/42.0/20151029/nightly/42/blob-c",
        [ping_factory("eve", 1.0)],
    )
    return ConverterConfig(
        storage=StorageConfig(
            input_root=str(raw), metadata_root=str(meta), output_root=str(tmp_path / "out")
        ),
        writer=WriterConfig(local_dir=tmp_path / "local", row_group_rows=2),
        histograms_path=HISTOGRAMS_PATH,
        num_workers=num_workers,
        partition_threshold=1,
    )


@pytest.mark.parametrize("num_workers", [1, 2])
def test_run_stream_end_to_end(tmp_path, blob_writer, ping_factory, hist, num_workers):
    cfg = _setup(tmp_path, blob_writer, ping_factory, hist, num_workers)
    summary = run_stream(LONGITUDINAL, cfg, "20151201", "20151202")

    assert summary.objects == 2
    assert summary.groups == 2
    assert summary.pings == 5
    # dave's session cannot be sorted; carol's histogram blob is not an object
    assert summary.sessions == 3
    assert (summary.built, summary.discarded) == (2, 1)

    out = tmp_path / "out" / "longitudinal" / "generationDate=20151202"
    df = pl.concat([pl.read_parquet(p) for p in sorted(out.iterdir())])
    rows = {r["clientId"]: r for r in df.to_dicts()}
    assert sorted(rows) == ["alice", "bob"]
    assert rows["alice"]["creationTimestamp"] == [1.0, 2.0]
    assert rows["alice"]["GC_MS"][0]["sum"] == 0
    assert rows["alice"]["GC_MS"][1]["sum"] == 10
    assert list(rows["bob"]["GC_MS"][0]["values"])[10] == 2
    assert len(summary.files) == len(list(out.iterdir()))


def test_existing_output_partition_is_refused(tmp_path, blob_writer, ping_factory, hist, caplog):
    cfg = _setup(tmp_path, blob_writer, ping_factory, hist)
    run_stream(LONGITUDINAL, cfg, "20151201", "20151202")
    with pytest.raises(OutputPartitionExistsError):
        run_stream(LONGITUDINAL, cfg, "20151201", "20151202")
    assert "already exists" in caplog.text


def test_empty_range_writes_nothing(tmp_path, blob_writer, ping_factory, hist):
    cfg = _setup(tmp_path, blob_writer, ping_factory, hist)
    summary = run_stream(LONGITUDINAL, cfg, "20160101", "20160102")
    assert (summary.groups, summary.pings, summary.files) == (0, 0, [])


def test_decode_group_missing_blob_fails(tmp_path, blob_writer, ping_factory):
    blob_writer(tmp_path, "present", [ping_factory("a", 1.0)])
    store = LocalBlobStore(tmp_path)
    group = [ObjectDescriptor("present", 1), ObjectDescriptor("gone", 1)]
    with pytest.raises(ObjectNotFoundError):
        decode_group(store, group)


def test_decode_group_keeps_order(tmp_path, blob_writer, ping_factory):
    blob_writer(tmp_path, "one", [ping_factory("a", 1.0), ping_factory("b", 1.0)])
    blob_writer(tmp_path, "two", [ping_factory("c", 1.0)])
    pings = decode_group(
        LocalBlobStore(tmp_path), [ObjectDescriptor("one", 1), ObjectDescriptor("two", 1)]
    )
    assert [p["clientId"] for p in pings] == ["a", "b", "c"]
