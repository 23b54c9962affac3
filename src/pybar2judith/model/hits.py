from __future__ import annotations
from dataclasses import dataclass, field
from typing import Iterator, List

import numpy as np

# Judith reserves cluster id -1 for "not yet clustered"
UNASSIGNED_CLUSTER = -1


@dataclass(slots=True)
class FlatHitRow:
    """
    One pyBAR readout slot as read from the input table.

    column/row are 1-based; a value of 0 in either marks an event without hits.
    """
    event_id: int
    trigger_timestamp: int
    column: int
    row: int
    charge: int = 0
    relative_timing: int = 0

    # Passthrough diagnostics
    tdc: int = 0
    tdc_timestamp: int = 0
    trigger_status: int = 0
    event_status: int = 0

    @property
    def is_sentinel(self) -> bool:
        return self.column == 0 or self.row == 0


@dataclass(slots=True)
class Hit:
    """
    Judith pixel hit (0-based pixel indices).

    pos_x/y/z stay at 0.0 until a geometry/alignment pass fills them.
    """
    pixel_x: int
    pixel_y: int
    value: int
    timing: int
    cluster_id: int = UNASSIGNED_CLUSTER
    pos_x: float = 0.0
    pos_y: float = 0.0
    pos_z: float = 0.0

    tdc: int = 0
    tdc_timestamp: int = 0
    trigger_status: int = 0
    event_status: int = 0

    @classmethod
    def from_row(cls, row: FlatHitRow) -> "Hit":
        return cls(
            pixel_x=row.column - 1,
            pixel_y=row.row - 1,
            value=row.charge,
            timing=row.relative_timing,
            tdc=row.tdc,
            tdc_timestamp=row.tdc_timestamp,
            trigger_status=row.trigger_status,
            event_status=row.event_status,
        )


# Column name in the Judith Hits table -> (Hit attribute, dtype)
HIT_COLUMNS = {
    "PixX": ("pixel_x", np.int32),
    "PixY": ("pixel_y", np.int32),
    "Value": ("value", np.int32),
    "Timing": ("timing", np.int32),
    "InCluster": ("cluster_id", np.int32),
    "PosX": ("pos_x", np.float64),
    "PosY": ("pos_y", np.float64),
    "PosZ": ("pos_z", np.float64),
}

DIAGNOSTIC_COLUMNS = {
    "TDC": ("tdc", np.int32),
    "TDCTimeStamp": ("tdc_timestamp", np.int32),
    "TriggerStatus": ("trigger_status", np.int32),
    "EventStatus": ("event_status", np.int32),
}


@dataclass
class HitGroup:
    """
    Ordered hits of a single event.

    Bound to its EventRecord by position in the output, not by key.
    """
    hits: List[Hit] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.hits)

    def __iter__(self) -> Iterator[Hit]:
        return iter(self.hits)

    def append(self, hit: Hit) -> None:
        self.hits.append(hit)
