from __future__ import annotations


class RegimeShiftError(ValueError):
    """Base class for recoverable, caller-visible pipeline failures."""


class InvalidConfiguration(RegimeShiftError):
    """A threshold, hazard or prior parameter is outside its valid range."""


class EmptyInput(RegimeShiftError):
    """The pipeline was asked to segment zero observations."""


class NonFiniteObservation(RegimeShiftError):
    """NaN or infinite value rejected at ingestion."""

    def __init__(self, index: int | None, value: object) -> None:
        where = f" at index {index}" if index is not None else ""
        super().__init__(f"non-finite observation{where}: {value!r}")
        self.index = index
        self.value = value


class UnorderedObservations(RegimeShiftError):
    """Timestamp earlier than its predecessor's."""

    def __init__(self, index: int, timestamp: str) -> None:
        super().__init__(f"timestamp {timestamp!r} at index {index} precedes the previous observation")
        self.index = index
        self.timestamp = timestamp


class InvalidTimestamp(RegimeShiftError):
    """Timestamp that cannot be read as an instant."""
