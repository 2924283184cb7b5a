"""
Error taxonomy for the metrics engine.

Distinguishes "computed from zero records" from "could not compute".
"""

from typing import Any, Mapping, Optional


class FounderMetricsError(Exception):
    """Base class for all founder metrics errors."""

    default_message = "Founder metrics error"

    def __init__(self, message: Optional[str] = None, *, context: Optional[Mapping[str, Any]] = None):
        self.message = message or self.default_message
        self.context = dict(context or {})
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        if self.context:
            return f"{self.message} | context={self.context}"
        return self.message


class DataUnavailable(FounderMetricsError):
    """The datastore could not be read (connectivity, timeout, query error).

    Callers must treat this as "metrics unknown", never as "metrics are zero".
    """

    default_message = "Data unavailable"


class MalformedRecord(FounderMetricsError):
    """A raw row is missing a field that cannot be defaulted."""

    default_message = "Malformed record"


class RecordNotFound(FounderMetricsError, LookupError):
    """A CRUD lookup by id or key matched nothing."""

    default_message = "Record not found"
