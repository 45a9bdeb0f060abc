"""
Source metadata: the pipeline's ``sources.json`` manifest.

The manifest maps each logical stream name to the storage prefix its raw
blobs live under.
"""

from __future__ import annotations
from typing import Any, Dict

from telemetry_batch_view.converter.io.storage import BlobStore

SOURCES_KEY = "sources.json"


class SourceNotFoundError(KeyError):
    """Raised when the manifest has no usable entry for a stream."""


class SourcesManifest:
    def __init__(self, sources: Dict[str, Any]):
        if not isinstance(sources, dict):
            raise ValueError("sources manifest must be a JSON object")
        self._sources = sources

    @classmethod
    def load(cls, store: BlobStore, key: str = SOURCES_KEY) -> "SourcesManifest":
        return cls(store.read_json(key))

    def _attribute(self, stream_name: str, attribute: str) -> str:
        entry = self._sources.get(stream_name)
        if not isinstance(entry, dict):
            raise SourceNotFoundError(f"No source named {stream_name!r} in {SOURCES_KEY}")
        value = entry.get(attribute)
        if not isinstance(value, str) or not value:
            raise SourceNotFoundError(f"Source {stream_name!r} has no {attribute!r}")
        return value.strip("/")

    def prefix_for(self, stream_name: str) -> str:
        return self._attribute(stream_name, "prefix")
