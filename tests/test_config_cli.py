from pathlib import Path

import h5py
import numpy as np
import pytest
from pydantic import ValidationError
from typer.testing import CliRunner

from pybar2judith.cli.info import app as info_app
from pybar2judith.config.load import load_config
from pybar2judith.config.schemas import Config
from pybar2judith.pipelines.core import app, apply_overrides

runner = CliRunner()


def _write_toml(tmp_path: Path, extra: str = "") -> Path:
    cfg = tmp_path / "convert.toml"
    cfg.write_text(
        "[run]\n"
        "diagnostics_level = 0\n"
        "\n"
        "[io]\n"
        f'input_path = "{(tmp_path / "pybar.h5").as_posix()}"\n'
        f'output_path = "{(tmp_path / "out" / "judith.h5").as_posix()}"\n'
        "\n"
        "[convert]\n"
        "chunk_size = 2\n"
        + extra
    )
    return cfg


def _write_input(path: Path) -> None:
    events = np.array([1, 1, 2, 3, 3, 3], dtype=np.int64)
    with h5py.File(path, "w") as f:
        g = f.create_group("Hits")
        g.create_dataset("event_number", data=events)
        g.create_dataset("trigger_time_stamp", data=(events * 40).astype(np.uint32))
        g.create_dataset("column", data=np.array([1, 2, 5, 6, 7, 8], dtype=np.uint8))
        g.create_dataset("row", data=np.array([1, 2, 5, 6, 7, 8], dtype=np.uint16))
        g.create_dataset("tot", data=np.full(6, 3, dtype=np.uint8))


def test_load_config_defaults(tmp_path: Path):
    cfg = load_config(_write_toml(tmp_path))
    assert cfg.io.plane == "Plane0"
    assert cfg.io.mode == "create"
    assert cfg.io.input_format == "hdf5_pybar"
    assert cfg.convert.author_mode is True
    assert cfg.convert.max_events == 0
    assert cfg.convert.max_hits == 4000
    assert cfg.convert.buffer_capacity == 100_000
    assert cfg.convert.timestamp_tolerance == pytest.approx(0.01)
    assert cfg.convert.chunk_size == 2


def test_config_validation():
    base = {"input_path": "in.h5", "output_path": "out.h5"}
    with pytest.raises(ValidationError):
        Config(io=base, convert={"author_mode": False})  # verifier on a fresh file
    with pytest.raises(ValidationError):
        Config(io={**base, "mode": "append"}, convert={"author_mode": False, "max_events": 3})
    with pytest.raises(ValidationError):
        Config(io={**base, "plane": "a/b"})
    with pytest.raises(ValidationError):
        Config(io=base, run={"diagnostics_level": 3})
    with pytest.raises(ValidationError):
        Config(io=base, convert={"max_events": -1})
    with pytest.raises(ValidationError, match="buffer_capacity"):
        Config(io=base, convert={"chunk_size": 200, "buffer_capacity": 100})
    assert Config(io=base, convert={"chunk_size": 100, "buffer_capacity": 100}).convert.chunk_size == 100
    assert Config(io={**base, "plane": "/Plane2/"}).io.plane == "Plane2"


def test_apply_overrides():
    cfg = Config(io={"input_path": "in.h5", "output_path": "out.h5"})
    out = apply_overrides(cfg, plane="Plane3", append=True, author_mode=False, check_timestamp=True)
    assert out.io.plane == "Plane3"
    assert out.io.mode == "append"
    assert out.convert.author_mode is False
    assert out.convert.check_timestamp is True
    # input config untouched
    assert cfg.io.plane == "Plane0"
    with pytest.raises(ValidationError):
        apply_overrides(cfg, author_mode=False)


def test_cli_convert_and_inspect(tmp_path: Path):
    _write_input(tmp_path / "pybar.h5")
    cfg = _write_toml(tmp_path)
    out = tmp_path / "out" / "judith.h5"

    result = runner.invoke(app, [str(cfg)])
    assert result.exit_code == 0, result.output
    assert str(out) in result.output

    result = runner.invoke(app, [str(cfg), "--plane", "Plane1", "--append", "--verify", "--check-timestamp"])
    assert result.exit_code == 0, result.output

    result = runner.invoke(info_app, ["summary", str(out)])
    assert result.exit_code == 0, result.output
    assert "Event: 3 events" in result.output
    assert "Plane0: 3 events, 6 hits" in result.output
    assert "Plane1: 3 events, 6 hits" in result.output

    png = tmp_path / "hitmap.png"
    result = runner.invoke(info_app, ["hitmap", str(out), "--plane", "Plane1", "-o", str(png)])
    assert result.exit_code == 0, result.output
    assert png.exists()


def test_cli_max_events(tmp_path: Path):
    _write_input(tmp_path / "pybar.h5")
    cfg = _write_toml(tmp_path)
    result = runner.invoke(app, [str(cfg), "--max-events", "2"])
    assert result.exit_code == 0, result.output
    result = runner.invoke(info_app, ["summary", str(tmp_path / "out" / "judith.h5")])
    assert "Event: 2 events" in result.output
    assert "Plane0: 2 events, 3 hits" in result.output
