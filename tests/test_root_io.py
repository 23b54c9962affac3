from pathlib import Path

import numpy as np
import pytest

uproot = pytest.importorskip("uproot")
ak = pytest.importorskip("awkward")

from pybar2judith.config.schemas import Config
from pybar2judith.errors import BufferCapacityError
from pybar2judith.io.adapters import ROOTHitSource
from pybar2judith.pipelines.core import convert


def _write_pybar_root(path: Path, chunks):
    """chunks: list of lists of (event_number, column, row)."""
    def jag(idx, dtype):
        return ak.values_astype(ak.Array([[h[idx] for h in c] for c in chunks]), dtype)

    with uproot.recreate(path) as f:
        f["Hits"] = {
            "n_entries": np.array([len(c) for c in chunks], dtype=np.int64),
            "event_number": jag(0, np.int64),
            "trigger_time_stamp": ak.values_astype(jag(0, np.int64) * 10, np.uint32),
            "column": jag(1, np.uint8),
            "row": jag(2, np.uint16),
            "tot": ak.values_astype(jag(1, np.int64) * 0 + 2, np.uint8),
        }


CHUNKS = [
    [(1, 1, 1), (1, 2, 2), (2, 3, 3)],
    [(2, 4, 4), (3, 0, 0)],
]


def test_root_source_reads_entries_as_chunks(tmp_path: Path):
    _write_pybar_root(tmp_path / "pybar.root", CHUNKS)
    chunks = list(ROOTHitSource(tmp_path / "pybar.root"))
    assert [len(c) for c in chunks] == [3, 2]
    rows = [r for c in chunks for r in c.rows()]
    assert [r.event_id for r in rows] == [1, 1, 2, 2, 3]
    assert rows[3].column == 4 and rows[3].trigger_timestamp == 20


def test_root_source_buffer_capacity(tmp_path: Path):
    _write_pybar_root(tmp_path / "pybar.root", CHUNKS)
    with pytest.raises(BufferCapacityError):
        list(ROOTHitSource(tmp_path / "pybar.root", buffer_capacity=2))


def test_root_to_root(tmp_path: Path):
    _write_pybar_root(tmp_path / "pybar.root", CHUNKS)
    cfg = Config(
        run={"diagnostics_level": 0},
        io={
            "input_path": str(tmp_path / "pybar.root"),
            "input_format": "root_pybar",
            "output_path": str(tmp_path / "judith.root"),
            "output_format": "root_judith",
        },
    )
    res = convert(cfg)
    assert res.n_events == 3

    with uproot.open(tmp_path / "judith.root") as f:
        np.testing.assert_array_equal(f["Event"]["FrameNumber"].array(library="np"), [1, 2, 3])
        np.testing.assert_array_equal(f["Plane0/Hits"]["NHits"].array(library="np"), [2, 2, 0])
