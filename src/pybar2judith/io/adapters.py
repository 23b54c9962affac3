"""
pybar2judith.io.adapters

Readers that turn pyBAR interpreted hit tables into a chunked stream of
flat hit rows (pybar2judith.model.hits.FlatHitRow) for the event segmenter.

Design goals
------------
- Keep I/O concerns isolated from event segmentation.
- Be tolerant to pyBAR schema variants through a small canonical field map
  (pybar2judith.io.canonicalize).
- Stream large files chunk by chunk without loading everything into RAM.
- Enforce the read buffer capacity: an oversized chunk means the input is
  malformed and is fatal.

Entry points
------------
- class HDF5HitSource: pyBAR HDF5 files (compound table, default node /Hits).
- class ROOTHitSource: pyBAR ROOT files, one TTree entry per chunk (needs uproot).
- class ArrayHitSource: in-memory chunks (dicts of columns or structured arrays).
- function make_source(cfg): factory from the [io] / [convert] TOML sections.

Config (example)
----------------
[io]
input_path   = "data/run42_interpreted.h5"
input_format = "hdf5_pybar"     # "hdf5_pybar" | "root_pybar"
input_node   = "Hits"

[convert]
buffer_capacity = 100000
chunk_size      = 100000        # HDF5 only; ROOT chunks are fixed by the file
"""
from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Sequence, Union

import h5py
import numpy as np

# Optional imports (guarded)
try:
    import uproot  # type: ignore
except Exception:  # pragma: no cover
    uproot = None  # type: ignore

from pybar2judith.config.schemas import Config
from pybar2judith.errors import BufferCapacityError, SchemaError
from pybar2judith.io.canonicalize import canonical_columns, resolve_field_map
from pybar2judith.model.hits import FlatHitRow

BUFFER_CAPACITY = 100_000

# FlatHitRow field order; zip() over these builds rows positionally
_ROW_FIELDS = (
    "event_id", "trigger_timestamp", "column", "row", "charge", "relative_timing",
    "tdc", "tdc_timestamp", "trigger_status", "event_status",
)


# ---------------------------------------------------------------------------
# Chunk container
# ---------------------------------------------------------------------------

@dataclass
class HitChunk:
    """
    One I/O chunk of flat rows held as canonical column arrays.

    n_entries is the row count the source declared for this chunk.
    """
    columns: Dict[str, np.ndarray]
    n_entries: int

    def __len__(self) -> int:
        return self.n_entries

    def rows(self) -> Iterator[FlatHitRow]:
        cols = [self.columns[k][: self.n_entries].tolist() for k in _ROW_FIELDS]
        for values in zip(*cols):
            yield FlatHitRow(*values)


# ---------------------------------------------------------------------------
# Base adapter API
# ---------------------------------------------------------------------------

class BaseAdapter:
    """
    Abstract hit row source.

    Subclasses implement _iter_raw_chunks(); iter_chunks() adds the capacity
    check and the per-chunk diagnostics line.
    """

    def __init__(self, buffer_capacity: int = BUFFER_CAPACITY, diagnostics_level: int = 0) -> None:
        self.buffer_capacity = int(buffer_capacity)
        self.diagnostics_level = diagnostics_level

    def _iter_raw_chunks(self) -> Iterator[HitChunk]:
        raise NotImplementedError

    def iter_chunks(self) -> Iterator[HitChunk]:
        for i, chunk in enumerate(self._iter_raw_chunks()):
            if self.diagnostics_level >= 2:
                print(f"[source] reading chunk {i + 1} with size {chunk.n_entries}")
            if chunk.n_entries > self.buffer_capacity:
                raise BufferCapacityError(
                    f"chunk size {chunk.n_entries} exceeds buffer capacity {self.buffer_capacity}",
                    chunk_index=i,
                )
            yield chunk

    def __iter__(self) -> Iterator[HitChunk]:
        return self.iter_chunks()


# ---------------------------------------------------------------------------
# HDF5 adapter
# ---------------------------------------------------------------------------

class HDF5HitSource(BaseAdapter):
    """
    Read the pyBAR interpreted hit table from HDF5.

    The node may be a compound dataset (the PyTables table pyBAR writes) or
    a group holding one 1-D dataset per column.

    Parameters
    ----------
    path : str
    node : str
        HDF5 path of the hit table, default "Hits".
    chunk_size : int
        Rows per chunk.
    """

    def __init__(
        self,
        path: str | Path,
        node: str = "Hits",
        chunk_size: int = BUFFER_CAPACITY,
        buffer_capacity: int = BUFFER_CAPACITY,
        diagnostics_level: int = 0,
    ) -> None:
        super().__init__(buffer_capacity=buffer_capacity, diagnostics_level=diagnostics_level)
        self.path = str(path)
        self.node = node
        self.chunk_size = int(chunk_size)

    def _iter_raw_chunks(self) -> Iterator[HitChunk]:
        with h5py.File(self.path, "r") as f:
            if self.node not in f:
                raise SchemaError(f"{self.node} not found in {self.path}")
            node = f[self.node]

            if isinstance(node, h5py.Dataset):
                if node.dtype.names is None:
                    raise SchemaError(f"{self.node} in {self.path} is not a compound table")
                names = node.dtype.names
                n_rows = node.shape[0]
            else:
                names = [k for k, v in node.items() if isinstance(v, h5py.Dataset)]
                lengths = {node[k].shape[0] for k in names}
                if len(lengths) > 1:
                    raise SchemaError(f"columns of {self.node} in {self.path} differ in length")
                n_rows = lengths.pop() if lengths else 0
            fmap = resolve_field_map(names)

            for start in range(0, n_rows, self.chunk_size):
                stop = min(start + self.chunk_size, n_rows)
                if isinstance(node, h5py.Dataset):
                    block = node[start:stop]
                else:
                    block = {src: node[src][start:stop] for src in fmap.values()}
                yield HitChunk(canonical_columns(block, fmap, stop - start), stop - start)


# ---------------------------------------------------------------------------
# ROOT adapter
# ---------------------------------------------------------------------------

class ROOTHitSource(BaseAdapter):
    """
    Read a pyBAR ROOT hit tree: each entry holds up to buffer_capacity rows,
    stored as variable-length array branches sized by 'n_entries'.
    """

    def __init__(
        self,
        path: str | Path,
        tree: str = "Hits",
        entries_per_read: int = 16,
        buffer_capacity: int = BUFFER_CAPACITY,
        diagnostics_level: int = 0,
    ) -> None:
        if uproot is None:  # pragma: no cover
            raise RuntimeError("uproot is required for ROOTHitSource but is not installed.")
        super().__init__(buffer_capacity=buffer_capacity, diagnostics_level=diagnostics_level)
        self.path = str(path)
        self.tree = tree
        self.entries_per_read = int(entries_per_read)

    def _iter_raw_chunks(self) -> Iterator[HitChunk]:
        with uproot.open(self.path) as f:
            if self.tree not in f:
                raise SchemaError(f"tree {self.tree} not found in {self.path}")
            tree = f[self.tree]
            names = list(tree.keys())
            fmap = resolve_field_map(names)
            branches = sorted(set(fmap.values()) | ({"n_entries"} & set(names)))

            for arrays in tree.iterate(branches, step_size=self.entries_per_read, library="np"):
                n_in_batch = len(arrays[fmap["event_id"]])
                for k in range(n_in_batch):
                    block = {src: np.asarray(arrays[src][k]) for src in fmap.values()}
                    if "n_entries" in arrays:
                        n = int(arrays["n_entries"][k])
                    else:
                        n = len(block[fmap["event_id"]])
                    if n > self.buffer_capacity:
                        # skip column building; iter_chunks reports the overflow
                        yield HitChunk({}, n)
                        return
                    yield HitChunk(canonical_columns(block, fmap, n), n)


# ---------------------------------------------------------------------------
# In-memory adapter
# ---------------------------------------------------------------------------

ChunkLike = Union[Mapping[str, Any], np.ndarray]


class ArrayHitSource(BaseAdapter):
    """
    Serve pre-built chunks from memory.

    Each chunk is either a mapping of column name -> sequence or a numpy
    structured array; pyBAR and canonical column names are both accepted.
    """

    def __init__(
        self,
        chunks: Sequence[ChunkLike],
        buffer_capacity: int = BUFFER_CAPACITY,
        diagnostics_level: int = 0,
    ) -> None:
        super().__init__(buffer_capacity=buffer_capacity, diagnostics_level=diagnostics_level)
        self.chunks = list(chunks)

    @classmethod
    def from_rows(cls, rows: Sequence[FlatHitRow], chunk_size: int = BUFFER_CAPACITY, **kwargs) -> "ArrayHitSource":
        """Split a flat row list into chunks of at most chunk_size rows."""
        chunks: List[Dict[str, List[int]]] = []
        for start in range(0, len(rows), chunk_size):
            part = rows[start:start + chunk_size]
            chunks.append({k: [getattr(r, k) for r in part] for k in _ROW_FIELDS})
        return cls(chunks, **kwargs)

    def _iter_raw_chunks(self) -> Iterator[HitChunk]:
        for chunk in self.chunks:
            names = chunk.dtype.names if isinstance(chunk, np.ndarray) else list(chunk.keys())
            fmap = resolve_field_map(names)
            n = len(chunk[fmap["event_id"]])
            if n > self.buffer_capacity:
                yield HitChunk({}, n)
                return
            yield HitChunk(canonical_columns(chunk, fmap, n), n)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def make_source(cfg: Config) -> BaseAdapter:
    """
    Create a hit row source from the [io] and [convert] sections.
    """
    fmt = cfg.io.input_format
    if fmt == "hdf5_pybar":
        return HDF5HitSource(
            cfg.io.input_path,
            node=cfg.io.input_node,
            chunk_size=cfg.convert.chunk_size,
            buffer_capacity=cfg.convert.buffer_capacity,
            diagnostics_level=cfg.run.diagnostics_level,
        )
    if fmt == "root_pybar":
        return ROOTHitSource(
            cfg.io.input_path,
            tree=cfg.io.input_node,
            buffer_capacity=cfg.convert.buffer_capacity,
            diagnostics_level=cfg.run.diagnostics_level,
        )
    raise ValueError(f"Unknown input format: {fmt}")
