"""Exceptions that are allowed to cross the batch boundary."""

from __future__ import annotations

from pathlib import Path
from typing import Optional


class AdvisoryFetcherError(Exception):
    """Base class for fatal advisory_fetcher errors."""


class DatasetIOError(AdvisoryFetcherError):
    """The dataset cannot be read, is empty, locked, or cannot be written.

    Raised before any network activity when detected during pre-flight.
    """

    def __init__(self, message: str, path: Optional[Path] = None) -> None:
        super().__init__(message)
        self.path = path


__all__ = ["AdvisoryFetcherError", "DatasetIOError"]
