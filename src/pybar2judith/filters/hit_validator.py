# src/pybar2judith/filters/hit_validator.py
from __future__ import annotations
from dataclasses import dataclass
from typing import Optional

from ..errors import HitCapacityError, InvalidHitError
from ..model.hits import FlatHitRow, Hit

MAX_HITS = 4000
N_COLUMNS = 80
N_ROWS = 336


@dataclass(frozen=True)
class HitLimits:
    max_hits: int = MAX_HITS
    n_columns: int = N_COLUMNS
    n_rows: int = N_ROWS


def classify_row(
    row: FlatHitRow,
    n_hits: int,
    limits: HitLimits = HitLimits(),
    *,
    chunk_index: Optional[int] = None,
    row_index: Optional[int] = None,
) -> Optional[Hit]:
    """
    Classify one flat row given the number of hits already in its event.

    Returns None for the "event without hits" sentinel (column or row 0 on
    the first row of an event) and a Hit otherwise. Raises HitCapacityError
    when the event is already full and InvalidHitError for coordinates
    outside the pixel matrix. Does not touch the event's hit group.
    """
    if row.is_sentinel and n_hits == 0:
        return None
    if n_hits >= limits.max_hits:
        raise HitCapacityError(
            f"reached max hits limit ({limits.max_hits})",
            chunk_index=chunk_index, row_index=row_index,
        )
    if not (1 <= row.column <= limits.n_columns and 1 <= row.row <= limits.n_rows):
        raise InvalidHitError(
            f"found invalid hit (column={row.column}, row={row.row})",
            chunk_index=chunk_index, row_index=row_index,
        )
    # pyBAR counts col/row from 1, Judith from 0
    return Hit.from_row(row)
