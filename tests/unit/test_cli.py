import json
from pathlib import Path

import pytest
import yaml  # type: ignore

from telemetry_batch_view.converter import cli  # type: ignore
from telemetry_batch_view.converter.streams import UnknownStreamError  # type: ignore

HISTOGRAMS_PATH = Path(__file__).resolve().parents[2] / "project_config" / "histograms.json"


@pytest.mark.parametrize(
    "argv",
    [
        [],
        ["Longitudinal"],
        ["--from-date", "20151201", "Longitudinal"],
        ["--from-date", "20151201", "--to-date", "20151202"],
        ["--from-date", "2015-12-01", "--to-date", "20151202", "Longitudinal"],
        ["--from-date", "20151202", "--to-date", "20151201", "Longitudinal"],
        ["--from-date", "20151201", "--to-date", "20151202", "Longitudinal", "extra"],
        ["--from-date"],
        ["--from-date", "20151201", "--to-date", "20151202", "--num-workers", "abc", "Longitudinal"],
        ["--log-level", "LOUD", "--from-date", "20151201", "--to-date", "20151202", "Longitudinal"],
    ],
)
def test_usage_on_bad_arguments(argv, capsys):
    assert cli.main(argv) is None
    captured = capsys.readouterr()
    assert captured.out.strip() == cli.USAGE
    assert captured.err == ""


def test_unknown_stream_propagates():
    with pytest.raises(UnknownStreamError):
        cli.main(["--from-date", "20151201", "--to-date", "20151201", "Nope"])


def test_config_error_exits_1(tmp_path):
    with pytest.raises(SystemExit) as exc:
        cli.main(
            [
                "--config", str(tmp_path / "missing.yaml"),
                "--from-date", "20151201",
                "--to-date", "20151201",
                "Longitudinal",
            ]
        )
    assert exc.value.code == 1


def _config(tmp_path):
    (tmp_path / "meta").mkdir()
    (tmp_path / "meta" / "sources.json").write_text(
        json.dumps({"telemetry-release": {"prefix": "telemetry-2"}})
    )
    config = tmp_path / "converter_config.yaml"
    config.write_text(
        yaml.safe_dump(
            {
                "storage": {
                    "input_root": str(tmp_path / "raw"),
                    "metadata_root": str(tmp_path / "meta"),
                    "output_root": str(tmp_path / "out"),
                },
                "writer": {"local_dir": str(tmp_path / "local")},
                "histograms_path": str(HISTOGRAMS_PATH),
            }
        )
    )
    return config


def test_run_and_rerun(tmp_path, blob_writer, ping_factory):
    config = _config(tmp_path)
    blob_writer(
        tmp_path / "raw",
        "telemetry-2/20151201/telemetry/4/main/Firefox/release/a/b/c/42/blob",
        [ping_factory("alice", 1.0)],
    )
    argv = ["--config", str(config), "--from-date", "20151201", "--to-date", "20151201", "Longitudinal"]
    cli.main(argv)
    out = tmp_path / "out" / "longitudinal" / "generationDate=20151201"
    assert len(list(out.iterdir())) == 1

    with pytest.raises(SystemExit) as exc:
        cli.main(argv)
    assert exc.value.code == 1


def test_num_workers_must_be_positive(tmp_path):
    config = _config(tmp_path)
    with pytest.raises(SystemExit) as exc:
        cli.main(
            ["--config", str(config), "--num-workers", "0",
             "--from-date", "20151201", "--to-date", "20151201", "Longitudinal"]
        )
    assert exc.value.code == 1
