import logging
import uuid
from itertools import islice
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

import pyarrow as pa  # type: ignore
import pyarrow.parquet as pq  # type: ignore

from telemetry_batch_view.converter.io.storage import BlobStore
from telemetry_batch_view.converter.schema import arrow_ready

logger = logging.getLogger(__name__)


class ParquetSerializer:
    """Writes rows into Snappy Parquet files of bounded size."""

    def __init__(
        self,
        schema: pa.Schema,
        out_dir: Union[str, Path],
        max_file_bytes: int,
        row_group_rows: int,
    ):
        self.schema = schema
        self.out_dir = Path(out_dir)
        self.max_file_bytes = max_file_bytes
        self.row_group_rows = row_group_rows
        self._has_maps = any(pa.types.is_map(f.type) for f in schema)

    def _table(self, rows: List[Dict[str, Any]]) -> pa.Table:
        if self._has_maps:
            rows = [arrow_ready(row, self.schema) for row in rows]
        return pa.Table.from_pylist(rows, schema=self.schema)

    def serialize(self, rows: Iterator[Dict[str, Any]]) -> Optional[Path]:
        """
        Drain `rows` into one local Parquet file until it reaches the size cap.

        Returns the file path, or None when `rows` had nothing left.
        """
        batch = list(islice(rows, self.row_group_rows))
        if not batch:
            return None
        self.out_dir.mkdir(parents=True, exist_ok=True)
        out_path = self.out_dir / f"part-{uuid.uuid4().hex}.parquet"
        written = 0
        try:
            with pa.OSFile(str(out_path), "wb") as sink:
                with pq.ParquetWriter(sink, self.schema, compression="snappy") as writer:
                    while batch:
                        writer.write_table(self._table(batch))
                        written += len(batch)
                        # row groups are flushed to the sink as they complete
                        if sink.tell() >= self.max_file_bytes:
                            break
                        batch = list(islice(rows, self.row_group_rows))
        except Exception:
            # never leave a partial file behind for a later upload
            out_path.unlink(missing_ok=True)
            raise
        logger.info("Wrote %d rows to %s", written, out_path)
        return out_path


def write_and_upload(
    rows: Iterable[Dict[str, Any]],
    serializer: ParquetSerializer,
    store: BlobStore,
    prefix: str,
) -> List[str]:
    """Serialize rows file by file, uploading each under `<prefix>/<uuid>`."""
    remaining = iter(rows)
    uploaded: List[str] = []
    while True:
        local_path = serializer.serialize(remaining)
        if local_path is None:
            return uploaded
        key = f"{prefix.rstrip('/')}/{uuid.uuid4()}"
        uploaded.append(store.upload_file(local_path, key))
