# src/pybar2judith/errors.py
from __future__ import annotations
from typing import Optional


class ConversionError(RuntimeError):
    """
    Base class for every fatal condition raised while converting.

    There is no recoverable tier: anything raised from here aborts the
    conversion and the output file should be discarded.

    chunk_index / row_index locate the offending input row (0-based) when known.
    """

    def __init__(
        self,
        message: str,
        *,
        chunk_index: Optional[int] = None,
        row_index: Optional[int] = None,
    ) -> None:
        self.chunk_index = chunk_index
        self.row_index = row_index
        super().__init__(self._with_location(message))

    def _with_location(self, message: str) -> str:
        if self.chunk_index is None:
            return message
        where = f"chunk {self.chunk_index + 1}"
        if self.row_index is not None:
            where += f" index {self.row_index}"
        return f"{message} at {where}"


class BufferCapacityError(ConversionError):
    """Input chunk declares more rows than the read buffer holds."""


class HitCapacityError(ConversionError):
    """An event collected more hits than MAX_HITS."""


class InvalidHitError(ConversionError):
    """Column or row outside the detector bounds."""


class SchemaError(ConversionError):
    """Input/output table preconditions violated (missing or unexpected tables/fields)."""


class EventNumberMismatchError(ConversionError):
    """Companion EventRecord frame number differs from the segmented event number."""


class EventOrderError(ConversionError):
    """Event numbers in the hit stream are not strictly increasing."""


class TimestampDriftError(ConversionError):
    """Drift ratio between the two clocks fell outside the tolerance band."""

    def __init__(self, message: str, *, ratio: float, **kwargs) -> None:
        self.ratio = ratio
        super().__init__(message, **kwargs)


class MissingEventError(ConversionError):
    """Fewer events segmented than companion EventRecords available."""

    def __init__(self, message: str, *, shortfall: int = 0, **kwargs) -> None:
        self.shortfall = shortfall
        super().__init__(message, **kwargs)
