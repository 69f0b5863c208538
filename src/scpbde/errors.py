# src/scpbde/errors.py
from __future__ import annotations


class PseudobulkDEError(Exception):
    """Base class for scPBDE errors."""


class InputValidationError(PseudobulkDEError, ValueError):
    """Input object, metadata or sample table is unusable as given."""


class EmptyContrastError(PseudobulkDEError, ValueError):
    """A contrast has no libraries left (e.g. after outlier removal)."""

    def __init__(self, contrast: str, reason: str = "no libraries left"):
        self.contrast = str(contrast)
        super().__init__(f"Contrast {self.contrast!r} is empty: {reason}")


class FittingFailure(PseudobulkDEError, RuntimeError):
    """The DE engine could not fit or test one contrast."""

    def __init__(self, contrast: str, reason: str):
        self.contrast = str(contrast)
        self.reason = str(reason)
        super().__init__(f"Fitting failed for contrast {self.contrast!r}: {self.reason}")
