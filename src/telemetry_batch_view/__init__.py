"""
Top-level package for the telemetry batch view project.

The converter lives under `telemetry_batch_view.converter` and is exposed as the
`telemetry-converter` console script.
"""

__all__: list[str] = []
