"""
Mock data generation utilities for the isoflow test suite.

This module provides reproducible synthetic kallisto experiments (sample
sheet, per-sample quantifications and transcript-to-gene table).
"""

from .base import DEFAULT_EXPERIMENT_CONFIG, SMALL_EXPERIMENT_CONFIG, MockDataConfig
from .generators import (
    SyntheticExperiment,
    gene_id,
    generate_kallisto_experiment,
    transcript_id,
    write_kallisto_h5,
    write_kallisto_tsv,
)

__all__ = [
    # Generators
    "generate_kallisto_experiment",
    "write_kallisto_h5",
    "write_kallisto_tsv",
    "transcript_id",
    "gene_id",
    "SyntheticExperiment",
    # Configuration
    "MockDataConfig",
    "DEFAULT_EXPERIMENT_CONFIG",
    "SMALL_EXPERIMENT_CONFIG",
]
