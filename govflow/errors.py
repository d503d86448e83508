"""Exception hierarchy for govflow."""

from __future__ import annotations

from typing import Optional


class GovflowError(Exception):
    """Base class for all govflow errors."""


class NotInitialized(GovflowError):
    """The session handle was requested before setup completed."""


class AcquisitionFailed(GovflowError):
    """No acquisition strategy produced an engine handle."""


class OperationFailed(GovflowError):
    """An operation raised inside a transactional ``execute`` block."""

    def __init__(self, message: str, operation: Optional[str] = None) -> None:
        super().__init__(message)
        self.operation = operation


class WrongItemKind(GovflowError):
    """A work item operation was attempted on an item of the wrong kind."""


class EngineError(GovflowError):
    """Raised by engine implementations for engine-level failures."""
