"""
isoflow core module with exception hierarchy and the analysis context.

This module provides the core exception hierarchy shared by every pipeline
stage, following a structured approach to error handling.
"""

from isoflow.core.exceptions import (
    AnnotationError,
    IsoflowCoreError,
    LiveViewerError,
    MetadataError,
    QuantificationError,
)


# Model fitting and testing exceptions
class ModelError(IsoflowCoreError):
    """Base exception for model fitting and testing."""

    pass


class ModelNotFoundError(ModelError):
    """Raised when a test references a fit name that was never fitted."""

    pass


class NonNestedModelsError(ModelError):
    """Raised when the reduced model is not nested within the full model."""

    pass


class FormulaError(ModelError):
    """Raised when formula parsing fails."""

    pass


class DesignMatrixError(ModelError):
    """Raised when design matrix construction fails."""

    pass


# Result extraction exceptions
class TestNotFoundError(IsoflowCoreError):
    """Raised when results are requested for a test that was never run."""

    __test__ = False


class AggregationError(IsoflowCoreError):
    """Raised when gene-level aggregation is requested outside gene mode."""

    pass


__all__ = [
    "IsoflowCoreError",
    "MetadataError",
    "AnnotationError",
    "QuantificationError",
    "LiveViewerError",
    "ModelError",
    "ModelNotFoundError",
    "NonNestedModelsError",
    "FormulaError",
    "DesignMatrixError",
    "TestNotFoundError",
    "AggregationError",
]
