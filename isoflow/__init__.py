"""
isoflow: multi-covariate differential expression for kallisto quantifications.

The public workflow lives in :mod:`isoflow.api`; services under
:mod:`isoflow.services` carry the implementation.
"""

from isoflow.version import __version__

__all__ = ["__version__"]
