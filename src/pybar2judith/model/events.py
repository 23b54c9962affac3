# src/pybar2judith/model/events.py
from __future__ import annotations
from dataclasses import dataclass

import numpy as np

from .hits import FlatHitRow

# pyBAR event status bit set when the FE produced an unknown data word
UNKNOWN_WORD_BIT = 0x0010

# Column name in the Judith Event table -> (EventRecord attribute, dtype)
EVENT_COLUMNS = {
    "TimeStamp": ("timestamp", np.uint64),
    "FrameNumber": ("frame_number", np.uint64),
    "TriggerOffset": ("trigger_offset", np.int32),
    "TriggerInfo": ("trigger_info", np.int32),
    "Invalid": ("invalid", np.bool_),
}


@dataclass(slots=True)
class EventRecord:
    """
    Judith per-event record.

    trigger_offset and trigger_info are reserved and always 0 here.
    """
    frame_number: int
    timestamp: int
    trigger_offset: int = 0
    trigger_info: int = 0
    invalid: bool = False

    @classmethod
    def from_row(cls, row: FlatHitRow) -> "EventRecord":
        """Author a record from the first row of an event."""
        return cls(
            frame_number=int(row.event_id),
            timestamp=int(row.trigger_timestamp),
            invalid=bool(row.event_status & UNKNOWN_WORD_BIT),
        )
