# src/celalign/errors.py
from __future__ import annotations

from typing import Optional


class AlignmentError(Exception):
    """Base error of the alignment pipeline; carries the failing stage name."""

    def __init__(self, message: str, *, stage: Optional[str] = None):
        super().__init__(message)
        self.stage = stage

    def __str__(self) -> str:
        msg = super().__str__()
        if self.stage:
            return f"[{self.stage}] {msg}"
        return msg


class ConfigurationError(AlignmentError, ValueError):
    """Empty/invalid gene universe or contradictory parameters."""


class NumericalError(AlignmentError, RuntimeError):
    """Rank deficiency, failed decomposition or degenerate variance."""


class DataShapeError(AlignmentError, ValueError):
    """Sample or gene indices disagree at a stage boundary."""
