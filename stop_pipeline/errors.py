"""
Exceptions raised by the stop pipeline.

Row-level problems (bad coordinates, provider failures) never raise; they are
recorded in the row's note. Only structural problems that make a whole run
impossible surface as exceptions.
"""

from typing import Any, Dict, Optional


class PipelineError(Exception):
    """Base class for stop pipeline errors."""

    def __init__(self, message: str = "", *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message or self.__class__.__name__
        self.details = details

    def __str__(self) -> str:
        return self.message


class StructuralError(PipelineError):
    """Input cannot be processed at all; fatal for the run."""


class MissingColumnError(StructuralError):
    """Spreadsheet has no column that can be used as the address."""


class EmptyBatchError(StructuralError):
    """No rows were supplied."""
