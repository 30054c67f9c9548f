"""
Core exceptions for isoflow.

This module provides the exception hierarchy used by the data-loading
stages of the pipeline. Every error carries a human-readable message plus a
``details`` dict with structured context (offending paths, missing columns,
available names) that callers can show or log.
"""

from typing import Any, Dict, Optional


class IsoflowCoreError(Exception):
    """Base exception for all isoflow errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self):
        return self.message


class MetadataError(IsoflowCoreError):
    """
    Raised when the sample metadata table cannot be loaded or shaped.

    Attributes:
        details: May contain:
            - path: Metadata file path
            - missing_columns: Requested columns absent from the file
            - available_columns: Columns actually present
            - duplicates: Sample identifiers occurring more than once
            - missing_paths: Derived quantification paths that do not exist

    Example:
        try:
            metadata, _, _ = service.load_sample_metadata(path, columns=["Run_s"])
        except MetadataError as e:
            print(e.message)
            print(e.details.get("available_columns"))
    """

    pass


class AnnotationError(IsoflowCoreError):
    """
    Raised when the transcript-to-gene mapping cannot be retrieved.

    Network failures are chained (``raise ... from exc``) so the original
    ``requests`` exception stays visible in the traceback.
    """

    pass


class QuantificationError(IsoflowCoreError):
    """
    Raised when kallisto quantifications are missing, malformed or
    inconsistent with the sample metadata.

    Attributes:
        details: May contain:
            - sample: Offending sample identifier
            - path: Offending quantification path
            - missing_samples: Samples without a quantification
    """

    pass


class LiveViewerError(IsoflowCoreError):
    """Raised when the interactive viewer cannot be launched."""

    pass
