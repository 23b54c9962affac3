# src/pybar2judith/pipelines/segmenter.py
"""
Event segmentation of the flat pyBAR hit stream.

The segmenter walks the concatenation of all input chunks as one ordered
stream, cuts it into events wherever the event number changes and hands
each finished (EventRecord, HitGroup) pair to a sink. Chunk boundaries are
invisible to the event model: the open event carries over from one chunk
to the next.

What happens when a new event opens depends on the mode strategy chosen at
construction:

- EventAuthor   writes a new EventRecord built from the first row.
- EventVerifier pulls the next record of an existing Event table and checks
                that both tables describe the same event (and, optionally,
                that their time stamps advance at the same rate).
"""
from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Protocol, Union

from ..errors import EventNumberMismatchError, EventOrderError, MissingEventError
from ..filters.hit_validator import HitLimits, classify_row
from ..io.adapters import HitChunk
from ..io.judith_store import BaseSink, EventTable
from ..model.events import EventRecord
from ..model.hits import FlatHitRow, HitGroup
from .timestamps import TimestampChecker


class SegmenterState(Enum):
    AWAITING_FIRST_EVENT = "awaiting_first_event"
    ACCUMULATING = "accumulating"
    FINISHED = "finished"


class ModeStrategy(Protocol):
    name: str

    @property
    def event_cap(self) -> Optional[int]: ...

    def open_event(self, row: FlatHitRow, event_index: int, chunk_index: int, row_index: int) -> Optional[EventRecord]: ...

    def finish(self, n_events: int) -> None: ...


class EventAuthor:
    """Author a new Event table; stops after max_events events (0 = no limit)."""

    name = "author"

    def __init__(self, max_events: int = 0) -> None:
        self.max_events = int(max_events)

    @property
    def event_cap(self) -> Optional[int]:
        return self.max_events or None

    def open_event(self, row: FlatHitRow, event_index: int, chunk_index: int, row_index: int) -> EventRecord:
        return EventRecord.from_row(row)

    def finish(self, n_events: int) -> None:
        pass


class EventVerifier:
    """
    Check the hit stream against an existing Event table.

    Stops once every record of the table has been matched; the table size is
    the natural event cap.
    """

    name = "verifier"

    def __init__(self, events: EventTable, checker: Optional[TimestampChecker] = None) -> None:
        self.events = events
        self.checker = checker

    @property
    def event_cap(self) -> Optional[int]:
        return len(self.events)

    def open_event(self, row: FlatHitRow, event_index: int, chunk_index: int, row_index: int) -> None:
        record = self.events.pull()
        if record is None:
            raise MissingEventError("invalid event: Event table exhausted",
                                    chunk_index=chunk_index, row_index=row_index)
        if record.frame_number != row.event_id:
            raise EventNumberMismatchError(
                f"event number mismatch (Event table {record.frame_number}, hits {row.event_id})",
                chunk_index=chunk_index, row_index=row_index,
            )
        if self.checker is not None:
            self.checker.check(event_index, record.timestamp, row.trigger_timestamp,
                               chunk_index=chunk_index, row_index=row_index)
        # the record already lives in the Event table
        return None

    def finish(self, n_events: int) -> None:
        shortfall = len(self.events) - n_events
        if shortfall > 0:
            raise MissingEventError(f"missing {shortfall} events", shortfall=shortfall)


@dataclass
class SegmentationResult:
    n_events: int
    n_hits: int
    n_rows: int
    n_chunks: int
    reached_max_events: bool


class EventSegmenter:
    """
    Stateful event builder.

    Feed chunks in order with feed(), or pass a whole source to run().
    close() finalizes the last open event and runs the mode's completeness
    check. Any ConversionError raised on the way leaves the open event
    unfinalized.
    """

    def __init__(
        self,
        sink: BaseSink,
        strategy: ModeStrategy,
        limits: HitLimits = HitLimits(),
        *,
        require_increasing_event_number: bool = True,
        diagnostics_level: int = 0,
    ) -> None:
        self.sink = sink
        self.strategy = strategy
        self.limits = limits
        self.require_increasing = require_increasing_event_number
        self.diagnostics_level = diagnostics_level

        self.state = SegmenterState.AWAITING_FIRST_EVENT
        self.current_id: Optional[int] = None
        self.current_record: Optional[EventRecord] = None
        self.group: Optional[HitGroup] = None

        self.n_events = 0  # events opened
        self.n_hits = 0    # hits in finalized events
        self.n_rows = 0
        self.n_chunks = 0
        self.reached_max_events = False

    @property
    def finished(self) -> bool:
        return self.state is SegmenterState.FINISHED

    def feed(self, chunk: Union[HitChunk, Iterable[FlatHitRow]], chunk_index: Optional[int] = None) -> bool:
        """
        Consume one chunk. Returns False once no further rows are wanted.
        """
        if self.finished:
            return False
        if chunk_index is None:
            chunk_index = self.n_chunks
        self.n_chunks += 1
        rows = chunk.rows() if isinstance(chunk, HitChunk) else chunk

        for j, row in enumerate(rows):
            if self.state is SegmenterState.AWAITING_FIRST_EVENT or row.event_id != self.current_id:
                self._start_event(row, chunk_index, j)
                if self.finished:
                    return False
            self.n_rows += 1
            hit = classify_row(row, len(self.group), self.limits, chunk_index=chunk_index, row_index=j)
            if hit is not None:
                self.group.append(hit)
        return True

    def _start_event(self, row: FlatHitRow, chunk_index: int, row_index: int) -> None:
        if self.require_increasing and self.current_id is not None and row.event_id <= self.current_id:
            raise EventOrderError(
                f"event number {row.event_id} follows {self.current_id}",
                chunk_index=chunk_index, row_index=row_index,
            )
        # nothing to finalize before the first event
        if self.group is not None:
            self._finalize()

        cap = self.strategy.event_cap
        if cap is not None and self.n_events >= cap:
            self.reached_max_events = True
            self.state = SegmenterState.FINISHED
            if self.diagnostics_level >= 1:
                print(f"[segmenter] reached max. events {cap} at chunk {chunk_index + 1} index {row_index}")
            return

        self.current_record = self.strategy.open_event(row, self.n_events, chunk_index, row_index)
        self.current_id = row.event_id
        self.group = HitGroup()
        self.n_events += 1
        self.state = SegmenterState.ACCUMULATING

    def _finalize(self) -> None:
        self.sink.emit(self.current_record, self.group)
        self.n_hits += len(self.group)
        self.current_record = None
        self.group = None

    def close(self) -> SegmentationResult:
        if self.group is not None:
            self._finalize()
        self.state = SegmenterState.FINISHED
        self.strategy.finish(self.n_events)
        return SegmentationResult(
            n_events=self.n_events,
            n_hits=self.n_hits,
            n_rows=self.n_rows,
            n_chunks=self.n_chunks,
            reached_max_events=self.reached_max_events,
        )

    def run(self, chunks: Iterable[Union[HitChunk, Iterable[FlatHitRow]]]) -> SegmentationResult:
        for i, chunk in enumerate(chunks):
            if not self.feed(chunk, i):
                break
        return self.close()
