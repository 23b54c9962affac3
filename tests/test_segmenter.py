import pytest

from pybar2judith.errors import (
    BufferCapacityError,
    EventNumberMismatchError,
    EventOrderError,
    HitCapacityError,
    InvalidHitError,
    MissingEventError,
    TimestampDriftError,
)
from pybar2judith.filters.hit_validator import HitLimits
from pybar2judith.io.adapters import ArrayHitSource
from pybar2judith.io.judith_store import EventTable, MemorySink
from pybar2judith.model.events import EventRecord
from pybar2judith.model.hits import FlatHitRow
from pybar2judith.pipelines.segmenter import (
    EventAuthor,
    EventSegmenter,
    EventVerifier,
    SegmenterState,
)
from pybar2judith.pipelines.timestamps import TimestampChecker


def _rows(layout, ts=None):
    """layout: list of (event_id, column, row); ts maps event_id -> trigger time stamp."""
    ts = ts or {}
    return [
        FlatHitRow(event_id=e, trigger_timestamp=ts.get(e, 100 * e), column=c, row=r,
                   charge=5, relative_timing=3)
        for e, c, r in layout
    ]


def _events(n_events, n_hits=1):
    layout = []
    for e in range(1, n_events + 1):
        layout.extend((e, 1 + k, 1 + k) for k in range(n_hits))
    return layout


def _table(frames, timestamps=None):
    timestamps = timestamps or [100 * f for f in frames]
    return EventTable.from_records([EventRecord(frame_number=f, timestamp=t) for f, t in zip(frames, timestamps)])


def _author(sink, max_events=0, **kw):
    return EventSegmenter(sink, EventAuthor(max_events=max_events), **kw)


LAYOUT = [
    (1, 1, 1), (1, 2, 3),
    (2, 0, 0),
    (3, 80, 336), (3, 10, 20), (3, 11, 21),
    (4, 5, 5),
]


@pytest.mark.parametrize("chunk_size", [1, 2, 3, 100])
def test_grouping_is_independent_of_chunking(chunk_size):
    sink = MemorySink()
    result = _author(sink).run(ArrayHitSource.from_rows(_rows(LAYOUT), chunk_size=chunk_size))

    assert result.n_events == 4
    assert result.n_hits == 6
    assert result.n_rows == len(LAYOUT)
    assert not result.reached_max_events
    assert [len(g) for g in sink.groups] == [2, 0, 3, 1]
    assert [r.frame_number for r in sink.records] == [1, 2, 3, 4]
    assert [(h.pixel_x, h.pixel_y) for h in sink.groups[2]] == [(79, 335), (9, 19), (10, 20)]


def test_first_event_is_not_emitted_empty():
    sink = MemorySink()
    _author(sink).run([_rows([(10, 4, 4), (11, 5, 5)])])
    assert [len(g) for g in sink.groups] == [1, 1]
    assert (sink.groups[0].hits[0].pixel_x, sink.groups[0].hits[0].pixel_y) == (3, 3)


def test_author_record_uses_first_row_of_event():
    rows = _rows([(1, 1, 1), (1, 2, 2)], ts={1: 777})
    rows[0].event_status = 0x0010
    rows[1].trigger_timestamp = 999
    sink = MemorySink()
    _author(sink).run([rows])
    (rec,) = sink.records
    assert rec.timestamp == 777
    assert rec.invalid is True


def test_sentinel_only_event_has_no_hits():
    sink = MemorySink()
    _author(sink).run([_rows([(1, 0, 0), (2, 3, 0), (3, 4, 4)])])
    assert [len(g) for g in sink.groups] == [0, 0, 1]


def test_invalid_hit_halts_without_finalizing_its_event():
    sink = MemorySink()
    seg = _author(sink)
    with pytest.raises(InvalidHitError) as exc:
        seg.run([_rows([(1, 1, 1), (2, 3, 3), (2, 81, 5), (3, 1, 1)])])
    assert "chunk 1 index 2" in str(exc.value)
    assert len(sink.groups) == 1
    assert [r.frame_number for r in sink.records] == [1]


def test_hit_capacity_exceeded():
    sink = MemorySink()
    seg = _author(sink, limits=HitLimits(max_hits=2))
    with pytest.raises(HitCapacityError):
        seg.run([_rows(_events(1, n_hits=3))])
    assert sink.groups == []


def test_buffer_capacity_exceeded():
    source = ArrayHitSource.from_rows(_rows(_events(5)), chunk_size=3, buffer_capacity=2)
    with pytest.raises(BufferCapacityError) as exc:
        _author(MemorySink()).run(source)
    assert "chunk 1" in str(exc.value)


def test_author_max_events():
    sink = MemorySink()
    seg = _author(sink, max_events=3)
    result = seg.run(ArrayHitSource.from_rows(_rows(_events(5, n_hits=2)), chunk_size=3))

    assert result.n_events == 3
    assert result.reached_max_events
    assert seg.state is SegmenterState.FINISHED
    assert [r.frame_number for r in sink.records] == [1, 2, 3]
    assert [len(g) for g in sink.groups] == [2, 2, 2]
    # rows of the 4th event are never consumed
    assert result.n_rows == 6


def test_author_unbounded_by_default():
    sink = MemorySink()
    result = _author(sink).run([_rows(_events(5))])
    assert result.n_events == 5
    assert not result.reached_max_events


def test_empty_stream_emits_nothing():
    sink = MemorySink()
    result = _author(sink).run([])
    assert result.n_events == 0
    assert sink.groups == [] and sink.records == []


def test_event_numbers_must_increase():
    with pytest.raises(EventOrderError):
        _author(MemorySink()).run([_rows([(1, 1, 1), (3, 1, 1), (2, 1, 1)])])


def test_order_check_can_be_disabled():
    sink = MemorySink()
    _author(sink, require_increasing_event_number=False).run([_rows([(1, 1, 1), (3, 1, 1), (2, 1, 1)])])
    assert [r.frame_number for r in sink.records] == [1, 3, 2]


def test_verifier_matches_existing_events():
    sink = MemorySink()
    table = _table([1, 2, 3, 4])
    result = EventSegmenter(sink, EventVerifier(table)).run([_rows(_events(4, n_hits=2))])
    assert result.n_events == 4
    assert len(sink.groups) == 4
    # Event records are not rewritten in verifier mode
    assert sink.records == []
    assert table.remaining == 0


def test_verifier_stops_at_table_size():
    sink = MemorySink()
    result = EventSegmenter(sink, EventVerifier(_table([1, 2, 3]))).run([_rows(_events(5))])
    assert result.n_events == 3
    assert result.reached_max_events
    assert len(sink.groups) == 3


def test_verifier_missing_events():
    sink = MemorySink()
    with pytest.raises(MissingEventError) as exc:
        EventSegmenter(sink, EventVerifier(_table([1, 2, 3, 4, 5]))).run([_rows(_events(4))])
    assert exc.value.shortfall == 1
    assert "missing 1 events" in str(exc.value)
    assert len(sink.groups) == 4


def test_verifier_event_number_mismatch():
    sink = MemorySink()
    with pytest.raises(EventNumberMismatchError) as exc:
        EventSegmenter(sink, EventVerifier(_table([1, 2, 3]))).run([_rows([(1, 1, 1), (2, 1, 1), (4, 1, 1)])])
    assert "chunk 1 index 2" in str(exc.value)
    assert len(sink.groups) == 2


def test_verifier_timestamp_check_passes():
    table = _table([1, 2, 3, 4], timestamps=[0, 100, 200, 300])
    # first sample lost in this capture; the exempt prefix covers it
    rows = _rows(_events(4), ts={1: 5000, 2: 1100, 3: 1200, 4: 1300})
    checker = TimestampChecker(tolerance=0.01)
    EventSegmenter(MemorySink(), EventVerifier(table, checker=checker)).run([rows])
    assert checker.last_ratio == pytest.approx(1.0)


def test_verifier_timestamp_drift():
    table = _table([1, 2, 3, 4], timestamps=[0, 100, 200, 300])
    rows = _rows(_events(4), ts={1: 1000, 2: 1100, 3: 1150, 4: 1250})
    sink = MemorySink()
    with pytest.raises(TimestampDriftError) as exc:
        EventSegmenter(sink, EventVerifier(table, checker=TimestampChecker(tolerance=0.01))).run([rows])
    assert exc.value.ratio == pytest.approx(2.0)
    assert len(sink.groups) == 2
