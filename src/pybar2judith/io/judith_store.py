from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import h5py
import numpy as np

# Optional imports (guarded)
try:
    import uproot  # type: ignore
    import awkward as ak  # type: ignore
except Exception:  # pragma: no cover
    uproot = None  # type: ignore
    ak = None  # type: ignore

from pybar2judith.config.schemas import Config
from pybar2judith.errors import HitCapacityError, SchemaError
from pybar2judith.model.events import EVENT_COLUMNS, EventRecord
from pybar2judith.model.hits import DIAGNOSTIC_COLUMNS, HIT_COLUMNS, HitGroup

FORMAT_VERSION = "1.0"
SOFTWARE = "pybar2judith 0.1.0"

EVENT_TABLE = "Event"
HITS_TABLE = "Hits"


# ---------------------------------------------------------------------------
# Companion Event table (verifier mode)
# ---------------------------------------------------------------------------

@dataclass
class EventTable:
    """
    Existing Judith Event table, read once and pulled in order.

    Read-only; the cursor only moves forward.
    """
    columns: Dict[str, np.ndarray]
    cursor: int = field(default=0, init=False)

    def __len__(self) -> int:
        return len(self.columns["FrameNumber"])

    @property
    def remaining(self) -> int:
        return len(self) - self.cursor

    def record(self, i: int) -> EventRecord:
        kw = {attr: self.columns[name][i].item() for name, (attr, _) in EVENT_COLUMNS.items()}
        return EventRecord(**kw)

    def pull(self) -> Optional[EventRecord]:
        """Next record in emission order, or None when exhausted."""
        if self.cursor >= len(self):
            return None
        rec = self.record(self.cursor)
        self.cursor += 1
        return rec

    @classmethod
    def from_records(cls, records: List[EventRecord]) -> "EventTable":
        return cls(_event_columns(records))


def _event_columns(records: List[EventRecord]) -> Dict[str, np.ndarray]:
    return {
        name: np.fromiter((getattr(r, attr) for r in records), dtype=dtype, count=len(records))
        for name, (attr, dtype) in EVENT_COLUMNS.items()
    }


def _read_event_columns(source: Any, path: str) -> Dict[str, np.ndarray]:
    cols: Dict[str, np.ndarray] = {}
    for name, (_, dtype) in EVENT_COLUMNS.items():
        if name not in source:
            raise SchemaError(f"{EVENT_TABLE}/{name} not found in {path}")
        cols[name] = np.asarray(source[name][...] if isinstance(source, h5py.Group) else source[name], dtype=dtype)
    return cols


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------

class BaseSink:
    """
    Destination for finalized (EventRecord, HitGroup) pairs.

    The record is None in verifier mode: the Event table already exists and
    only the plane's Hits are written. The n-th group belongs to the n-th
    Event record.
    """

    def __init__(self, max_hits: int = 4000, flush_every: int = 10_000) -> None:
        self.max_hits = int(max_hits)
        self.flush_every = int(flush_every)
        self.n_events = 0
        self.n_hits = 0
        self.n_events_written = 0
        self.n_hits_written = 0
        self._records: List[EventRecord] = []
        self._groups: List[HitGroup] = []
        self._closed = False

    def emit(self, record: Optional[EventRecord], group: HitGroup) -> None:
        if len(group) > self.max_hits:
            raise HitCapacityError(f"hit group of {len(group)} hits exceeds max hits {self.max_hits}")
        if record is not None:
            self._records.append(record)
        self._groups.append(group)
        self.n_events += 1
        self.n_hits += len(group)
        if len(self._groups) >= self.flush_every:
            self.flush()

    def flush(self) -> None:
        if self._groups or self._records:
            self._write(self._records, self._groups)
            self.n_events_written += len(self._groups)
            self.n_hits_written += sum(len(g) for g in self._groups)
        self._records = []
        self._groups = []

    def close(self) -> None:
        if self._closed:
            return
        self.flush()
        self._closed = True
        self._close()

    def abort(self) -> None:
        """Close without flushing pending pairs."""
        if self._closed:
            return
        self._records = []
        self._groups = []
        self._closed = True
        self._close()

    def _write(self, records: List[EventRecord], groups: List[HitGroup]) -> None:
        raise NotImplementedError

    def _close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.close()
        else:
            self.abort()


class MemorySink(BaseSink):
    """Keep everything in lists; pairs are visible as soon as they are emitted."""

    def __init__(self, max_hits: int = 4000) -> None:
        super().__init__(max_hits=max_hits, flush_every=1)
        self.records: List[EventRecord] = []
        self.groups: List[HitGroup] = []

    def _write(self, records: List[EventRecord], groups: List[HitGroup]) -> None:
        self.records.extend(records)
        self.groups.extend(groups)


def _flatten_groups(groups: List[HitGroup], columns: Dict[str, Tuple[str, Any]]) -> Tuple[np.ndarray, Dict[str, np.ndarray]]:
    """
    Flatten hit groups into CSR-style columns.

    Returns counts (N,) int32 and a dict of flat 1-D arrays (len = total hits).
    """
    counts = np.fromiter((len(g) for g in groups), dtype=np.int32, count=len(groups))
    flat = {}
    for name, (attr, dtype) in columns.items():
        flat[name] = np.fromiter(
            (getattr(h, attr) for g in groups for h in g.hits), dtype=dtype, count=int(counts.sum())
        )
    return counts, flat


def _append_ds(ds: h5py.Dataset, data: np.ndarray) -> None:
    if len(data) == 0:
        return
    n = ds.shape[0]
    ds.resize((n + len(data),))
    ds[n:] = data


class HDF5JudithSink(BaseSink):
    """
    Write Judith tables into HDF5.

    Layout:

    /Event/TimeStamp       (N,) uint64
    /Event/FrameNumber     (N,) uint64
    /Event/TriggerOffset   (N,) int32     reserved, 0
    /Event/TriggerInfo     (N,) int32     reserved, 0
    /Event/Invalid         (N,) bool

    /<plane>/Hits/event_ptr (N+1,) int64  CSR pointers into the flat hit columns
    /<plane>/Hits/NHits     (N,) int32
    /<plane>/Hits/PixX, PixY, Value, Timing, InCluster  (M,) int32
    /<plane>/Hits/PosX, PosY, PosZ                      (M,) float64
    /<plane>/Hits/TDC, TDCTimeStamp, TriggerStatus, EventStatus  (M,) int32, optional
    """

    def __init__(
        self,
        f: h5py.File,
        plane: str,
        *,
        author_mode: bool = True,
        store_diagnostics: bool = False,
        max_hits: int = 4000,
        flush_every: int = 10_000,
    ) -> None:
        super().__init__(max_hits=max_hits, flush_every=flush_every)
        self.f = f
        self.plane = plane
        self.author_mode = author_mode
        self.hit_columns = dict(HIT_COLUMNS)
        if store_diagnostics:
            self.hit_columns.update(DIAGNOSTIC_COLUMNS)

        if author_mode:
            g_ev = f.create_group(EVENT_TABLE)
            for name, (_, dtype) in EVENT_COLUMNS.items():
                g_ev.create_dataset(name, shape=(0,), maxshape=(None,), dtype=dtype, chunks=True, compression="gzip")

        g_plane = f.create_group(plane)
        g_plane.attrs["created_utc"] = datetime.now(timezone.utc).isoformat()
        g_plane.attrs["author_mode"] = author_mode
        g_hits = g_plane.create_group(HITS_TABLE)
        g_hits.create_dataset("event_ptr", data=np.zeros(1, dtype=np.int64), maxshape=(None,), chunks=True)
        g_hits.create_dataset("NHits", shape=(0,), maxshape=(None,), dtype=np.int32, chunks=True, compression="gzip")
        for name, (_, dtype) in self.hit_columns.items():
            g_hits.create_dataset(name, shape=(0,), maxshape=(None,), dtype=dtype, chunks=True, compression="gzip")
        self.g_hits = g_hits

    def _write(self, records: List[EventRecord], groups: List[HitGroup]) -> None:
        if self.author_mode:
            g_ev = self.f[EVENT_TABLE]
            for name, arr in _event_columns(records).items():
                _append_ds(g_ev[name], arr)

        counts, flat = _flatten_groups(groups, self.hit_columns)
        ptr = self.g_hits["event_ptr"]
        last = int(ptr[-1])
        _append_ds(ptr, last + np.cumsum(counts, dtype=np.int64))
        _append_ds(self.g_hits["NHits"], counts)
        for name, arr in flat.items():
            _append_ds(self.g_hits[name], arr)

    def _close(self) -> None:
        self.f[self.plane].attrs["n_events"] = self.n_events_written
        self.f[self.plane].attrs["n_hits"] = self.n_hits_written
        self.f.close()


class ROOTJudithSink(BaseSink):
    """
    Write Judith TTrees with uproot: 'Event' at top level and '<plane>/Hits'
    with an NHits counter and one jagged branch per hit column.
    """

    def __init__(
        self,
        f,
        plane: str,
        *,
        author_mode: bool = True,
        store_diagnostics: bool = False,
        max_hits: int = 4000,
        flush_every: int = 10_000,
    ) -> None:
        if uproot is None or ak is None:  # pragma: no cover
            raise RuntimeError("uproot and awkward are required for ROOTJudithSink but are not installed.")
        super().__init__(max_hits=max_hits, flush_every=flush_every)
        self.f = f
        self.plane = plane
        self.author_mode = author_mode
        self.hit_columns = dict(HIT_COLUMNS)
        if store_diagnostics:
            self.hit_columns.update(DIAGNOSTIC_COLUMNS)

        if author_mode:
            self.event_tree = f.mktree(EVENT_TABLE, {name: dtype for name, (_, dtype) in EVENT_COLUMNS.items()})
        record_type = ", ".join(f"{name}: {np.dtype(dtype).name}" for name, (_, dtype) in self.hit_columns.items())
        self.hits_tree = f.mktree(
            f"{plane}/{HITS_TABLE}",
            {HITS_TABLE: f"var * {{{record_type}}}"},
            counter_name=lambda counted: "NHits",
            field_name=lambda outer, inner: inner,
        )

    def _write(self, records: List[EventRecord], groups: List[HitGroup]) -> None:
        if self.author_mode:
            self.event_tree.extend(_event_columns(records))
        counts, flat = _flatten_groups(groups, self.hit_columns)
        jagged = {name: ak.unflatten(arr, counts) for name, arr in flat.items()}
        self.hits_tree.extend({HITS_TABLE: ak.zip(jagged)})

    def _close(self) -> None:
        self.f.close()


# ---------------------------------------------------------------------------
# Opening the output with its preconditions
# ---------------------------------------------------------------------------

def _check_preconditions(has_event: bool, has_plane: bool, author_mode: bool, plane: str, path: str) -> None:
    if author_mode and has_event:
        raise SchemaError(f"{EVENT_TABLE} table already exists in {path}")
    if not author_mode and not has_event:
        raise SchemaError(f"{EVENT_TABLE} table not existing in {path}")
    if has_plane:
        raise SchemaError(f"plane {plane} already exists in {path}")


def _open_hdf5(cfg: Config, config_text: Optional[str]) -> Tuple[BaseSink, Optional[EventTable]]:
    path = cfg.io.output_path
    if cfg.io.mode == "append" and not Path(path).exists():
        _check_preconditions(False, False, cfg.convert.author_mode, cfg.io.plane, path)
    f = h5py.File(path, "w" if cfg.io.mode == "create" else "a")
    try:
        _check_preconditions(EVENT_TABLE in f, cfg.io.plane in f, cfg.convert.author_mode, cfg.io.plane, path)
        events = None
        if not cfg.convert.author_mode:
            events = EventTable(_read_event_columns(f[EVENT_TABLE], path))
            if len(events) == 0:
                raise SchemaError(f"{EVENT_TABLE} table is empty in {path}")

        if cfg.io.mode == "create":
            f.attrs["format_version"] = FORMAT_VERSION
            f.attrs["created_utc"] = datetime.now(timezone.utc).isoformat()
            f.attrs["software"] = SOFTWARE
        if config_text is not None:
            f.attrs[f"config_text.{cfg.io.plane}"] = config_text

        sink = HDF5JudithSink(
            f,
            cfg.io.plane,
            author_mode=cfg.convert.author_mode,
            store_diagnostics=cfg.convert.store_diagnostics,
            max_hits=cfg.convert.max_hits,
        )
    except Exception:
        f.close()
        raise
    return sink, events


def _open_root(cfg: Config) -> Tuple[BaseSink, Optional[EventTable]]:
    if uproot is None or ak is None:  # pragma: no cover
        raise RuntimeError("uproot and awkward are required for ROOT output but are not installed.")
    path = cfg.io.output_path
    events = None
    if cfg.io.mode == "append" and Path(path).exists():
        with uproot.open(path) as existing:
            keys = {k.split(";")[0] for k in existing.keys(recursive=False)}
            has_event, has_plane = EVENT_TABLE in keys, cfg.io.plane in keys
            _check_preconditions(has_event, has_plane, cfg.convert.author_mode, cfg.io.plane, path)
            if not cfg.convert.author_mode:
                arrays = existing[EVENT_TABLE].arrays(list(EVENT_COLUMNS), library="np")
                events = EventTable(_read_event_columns(arrays, path))
        f = uproot.update(path)
    else:
        _check_preconditions(False, False, cfg.convert.author_mode, cfg.io.plane, path)
        f = uproot.recreate(path)

    if events is not None and len(events) == 0:
        f.close()
        raise SchemaError(f"{EVENT_TABLE} table is empty in {path}")
    try:
        sink = ROOTJudithSink(
            f,
            cfg.io.plane,
            author_mode=cfg.convert.author_mode,
            store_diagnostics=cfg.convert.store_diagnostics,
            max_hits=cfg.convert.max_hits,
        )
    except Exception:
        f.close()
        raise
    return sink, events


def open_judith_output(cfg: Config, config_text: Optional[str] = None) -> Tuple[BaseSink, Optional[EventTable]]:
    """
    Open the output file and return (sink, companion Event table).

    The Event table is returned in verifier mode only. Raises SchemaError when
    the file does not match the mode: an Event table that already exists in
    author mode, a missing or empty one in verifier mode, or an existing plane.
    """
    if cfg.io.output_format == "hdf5_judith":
        return _open_hdf5(cfg, config_text)
    if cfg.io.output_format == "root_judith":
        return _open_root(cfg)
    raise ValueError(f"Unknown output format: {cfg.io.output_format}")


# ---------------------------------------------------------------------------
# Reading back (HDF5)
# ---------------------------------------------------------------------------

def read_event_table(path: str | Path) -> EventTable:
    path = str(path)
    with h5py.File(path, "r") as f:
        if EVENT_TABLE not in f:
            raise SchemaError(f"{EVENT_TABLE} table not existing in {path}")
        return EventTable(_read_event_columns(f[EVENT_TABLE], path))


def read_plane_hits(path: str | Path, plane: str) -> Dict[str, np.ndarray]:
    """Return the flat hit columns (plus event_ptr / NHits) of one plane."""
    path = str(path)
    with h5py.File(path, "r") as f:
        key = f"{plane}/{HITS_TABLE}"
        if key not in f:
            raise KeyError(f"{key} not found in {path}")
        return {name: np.array(ds) for name, ds in f[key].items()}


def read_summary(path: str | Path) -> Dict[str, Any]:
    """Event count and per-plane event/hit counts of an HDF5 Judith file."""
    path = str(path)
    out: Dict[str, Any] = {"n_events": 0, "planes": {}}
    with h5py.File(path, "r") as f:
        if EVENT_TABLE in f:
            out["n_events"] = int(f[EVENT_TABLE]["FrameNumber"].shape[0])
        for name, grp in f.items():
            if name == EVENT_TABLE or not isinstance(grp, h5py.Group) or HITS_TABLE not in grp:
                continue
            out["planes"][name] = {
                "n_events": int(grp[HITS_TABLE]["NHits"].shape[0]),
                "n_hits": int(grp[HITS_TABLE]["event_ptr"][-1]),
            }
    return out
