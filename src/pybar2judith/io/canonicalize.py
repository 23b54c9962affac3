# src/pybar2judith/io/canonicalize.py
from __future__ import annotations
from typing import Any, Dict, Iterable, Mapping, Optional

import numpy as np

from ..errors import SchemaError

_CANON_KEYS = {
    # canonical_key: tuple of fallback source keys (pyBAR versions differ)
    "event_id":          ("event_number", "event_id"),
    "trigger_timestamp": ("trigger_time_stamp", "trigger_timestamp"),
    "column":            ("column", "col"),
    "row":               ("row",),
    "charge":            ("tot", "charge", "value"),
    "relative_timing":   ("relative_BCID", "relative_bcid", "relative_timing"),
    "tdc":               ("TDC", "tdc"),
    "tdc_timestamp":     ("TDC_time_stamp", "TDC_timestamp", "tdc_time_stamp", "tdc_timestamp"),
    "trigger_status":    ("trigger_status",),
    "event_status":      ("event_status",),
}

REQUIRED_KEYS = ("event_id", "trigger_timestamp", "column", "row")

_CANON_DTYPES = {
    "event_id": np.int64,
    "trigger_timestamp": np.uint32,
    # wide enough that corrupt coordinates are not wrapped into the sentinel
    "column": np.int32,
    "row": np.int32,
    "charge": np.uint8,
    "relative_timing": np.uint8,
    "tdc": np.uint16,
    # uint8 in early pyBAR files, uint16 later; widen
    "tdc_timestamp": np.uint16,
    "trigger_status": np.uint8,
    "event_status": np.uint16,
}


def _first(names: Iterable[str], available: Iterable[str]) -> Optional[str]:
    available = set(available)
    for k in names:
        if k in available:
            return k
    return None


def resolve_field_map(available: Iterable[str]) -> Dict[str, str]:
    """
    Map canonical field names to the source column names present in a table.

    Raises SchemaError when a required field cannot be found. Optional
    diagnostic fields that are absent are left out of the map.
    """
    available = list(available)
    fmap: Dict[str, str] = {}
    for canon, names in _CANON_KEYS.items():
        src = _first(names, available)
        if src is not None:
            fmap[canon] = src
    missing = [k for k in REQUIRED_KEYS if k not in fmap]
    if missing:
        raise SchemaError(
            f"input hit table lacks required field(s) {missing}; "
            f"available columns: {sorted(available)}"
        )
    return fmap


def canonical_columns(source: Mapping[str, Any], fmap: Mapping[str, str], n: int) -> Dict[str, np.ndarray]:
    """
    Build canonical column arrays of length n from a mapping of source columns.

    Missing optional fields are zero-filled.
    """
    cols: Dict[str, np.ndarray] = {}
    for canon, dtype in _CANON_DTYPES.items():
        src = fmap.get(canon)
        if src is None:
            cols[canon] = np.zeros(n, dtype=dtype)
        else:
            cols[canon] = np.asarray(source[src])[:n].astype(dtype, copy=False)
    return cols
