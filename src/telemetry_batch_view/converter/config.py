"""
Configuration loader & schema for the telemetry converter.
"""

from __future__ import annotations
from pathlib import Path
from typing import Optional

import yaml  # type: ignore
from pydantic import BaseModel, Field, model_validator, ValidationError, ConfigDict

from telemetry_batch_view.converter.partitioning import PARTITION_THRESHOLD
from telemetry_batch_view.utils.param_store import get_param

# SSM parameter holding the output bucket when the config leaves it unset
OUTPUT_BUCKET_PARAM = "/telemetry/parquet_bucket_name"


class StorageConfig(BaseModel):
    """Where raw blobs are read from and Parquet output is written to."""

    input_root: str = Field(..., description="Local directory or s3://bucket[/prefix] of raw blobs")
    metadata_root: str = Field(
        ..., description="Local directory or s3://bucket[/prefix] holding sources.json"
    )
    output_root: Optional[str] = Field(
        None,
        description="Local directory or s3://bucket[/prefix] for Parquet output; "
        "resolved from SSM when omitted",
    )

    model_config = ConfigDict(extra="forbid")

    def resolved_output_root(self) -> str:
        if self.output_root:
            return self.output_root
        return f"s3://{get_param(OUTPUT_BUCKET_PARAM)}"


class WriterConfig(BaseModel):
    """Parquet output sizing."""

    max_file_bytes: int = Field(
        512 * 1024 * 1024, gt=0, description="Close a Parquet file once it reaches this size"
    )
    row_group_rows: int = Field(1000, gt=0, description="Rows per Parquet row group")
    local_dir: Path = Field(Path("outputs/tmp"), description="Scratch directory for local files")

    model_config = ConfigDict(extra="forbid")


class ConverterConfig(BaseModel):
    """
    Configuration for a converter job.

    Attributes:
      storage (StorageConfig): Input, metadata and output locations.
      writer (WriterConfig): Parquet output sizing.
      histograms_path (Path): Histogram definition set (Histograms.json format).
      num_workers (int): Parallel worker processes for decode and build stages.
      partition_threshold (int): Exclusive byte bound for one partition group.
    """

    storage: StorageConfig
    writer: WriterConfig = Field(default_factory=WriterConfig)
    histograms_path: Path = Field(
        Path("project_config/histograms.json"), description="Histogram definitions file"
    )
    num_workers: int = Field(1, gt=0, description="Number of parallel worker processes")
    partition_threshold: int = Field(
        PARTITION_THRESHOLD, gt=0, description="Exclusive size bound of a partition group"
    )

    @model_validator(mode="before")
    def ensure_sections_present(cls, values):
        if not isinstance(values, dict):
            raise ValueError("Config must be a mapping")
        if "storage" not in values:
            raise ValueError("Missing required `storage` section")
        return values

    @model_validator(mode="before")
    def convert_paths(cls, values):
        hp = values.get("histograms_path") if isinstance(values, dict) else None
        if isinstance(hp, str):
            values["histograms_path"] = Path(hp)
        return values

    model_config = ConfigDict(extra="forbid")


def load_config(path: Path) -> ConverterConfig:
    """
    Load and validate a ConverterConfig from a YAML file.

    Raises
    ------
    FileNotFoundError
        If the YAML file does not exist.
    ValueError
        If the YAML is malformed or any field is missing or invalid.
    """
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        raise ValueError(f"Error reading config '{path}':\n{e}") from e
    try:
        return ConverterConfig.model_validate(data)
    except ValidationError as e:
        # Re-raise with a clearer prefix
        raise ValueError(f"Error parsing config '{path}':\n{e}") from e
