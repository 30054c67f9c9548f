"""
Pytest configuration and fixtures for the isoflow test suite.

This module provides the markers, an isolated workspace per test and
synthetic kallisto experiments shared by the unit and integration tests.
"""

import logging
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, Generator

import pandas as pd
import pytest

from isoflow.api import fit, lrt, prepare
from isoflow.config.settings import get_settings
from isoflow.services.metadata.sample_metadata_service import PathTemplate
from mock_data import (
    DEFAULT_EXPERIMENT_CONFIG,
    SMALL_EXPERIMENT_CONFIG,
    SyntheticExperiment,
    generate_kallisto_experiment,
)

# Suppress warnings during testing
logging.getLogger("anndata").setLevel(logging.ERROR)

# Test constants
TEST_WORKSPACE_PREFIX = "isoflow_test_"
MOCK_BIOMART_HOST = "https://biomart.mock-isoflow.test"


# ==============================================================================
# Pytest Configuration Hooks
# ==============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers and settings."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


# ==============================================================================
# Core Infrastructure Fixtures
# ==============================================================================


@pytest.fixture(scope="session")
def test_config() -> Dict[str, Any]:
    """Global test configuration."""
    return {
        "workspace_prefix": TEST_WORKSPACE_PREFIX,
        "mock_biomart_host": MOCK_BIOMART_HOST,
        "cleanup_workspaces": True,
    }


@pytest.fixture(scope="function")
def temp_workspace(test_config: Dict[str, Any]) -> Generator[Path, None, None]:
    """Create isolated temporary workspace for each test."""
    workspace_path = Path(tempfile.mkdtemp(prefix=test_config["workspace_prefix"]))
    (workspace_path / "cache").mkdir(exist_ok=True)

    try:
        yield workspace_path
    finally:
        if test_config["cleanup_workspaces"] and workspace_path.exists():
            shutil.rmtree(workspace_path, ignore_errors=True)


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, temp_workspace: Path):
    """Point the settings singleton at the per-test workspace."""
    settings = get_settings()
    monkeypatch.setattr(settings, "WORKSPACE", temp_workspace)
    monkeypatch.setattr(settings, "BIOMART_HOST", MOCK_BIOMART_HOST)
    monkeypatch.setattr(settings, "QUANT_SUBDIR", "kallisto")
    monkeypatch.setattr(settings, "ABUNDANCE_FILE", "abundance.h5")
    return settings


# ==============================================================================
# Synthetic Experiment Fixtures
# ==============================================================================


@pytest.fixture(scope="session")
def experiment(tmp_path_factory) -> SyntheticExperiment:
    """24 samples, three two-level covariates, HDF5 outputs with bootstraps."""
    root = tmp_path_factory.mktemp("experiment_h5")
    return generate_kallisto_experiment(root, DEFAULT_EXPERIMENT_CONFIG, fmt="h5")


@pytest.fixture(scope="session")
def small_experiment(tmp_path_factory) -> SyntheticExperiment:
    """6 samples, treatment only, HDF5 outputs with bootstraps."""
    root = tmp_path_factory.mktemp("experiment_small")
    return generate_kallisto_experiment(root, SMALL_EXPERIMENT_CONFIG, fmt="h5")


@pytest.fixture(scope="session")
def tsv_experiment(tmp_path_factory) -> SyntheticExperiment:
    """6 samples, treatment only, plain TSV outputs without bootstraps."""
    root = tmp_path_factory.mktemp("experiment_tsv")
    return generate_kallisto_experiment(root, SMALL_EXPERIMENT_CONFIG, fmt="tsv")


def sample_table(exp: SyntheticExperiment, fmt: str = "h5") -> pd.DataFrame:
    """Sample table with ``sample``, covariates and ``path`` for ``exp``."""
    template = PathTemplate(str(exp.base), "kallisto", f"abundance.{fmt}")
    table = exp.sample_sheet[["run_accession"] + exp.covariate_columns].rename(
        columns={"run_accession": "sample"}
    )
    table["path"] = [template.render(s) for s in table["sample"]]
    return table


@pytest.fixture
def make_sample_table():
    return sample_table


@pytest.fixture
def sample_to_covariates(experiment: SyntheticExperiment) -> pd.DataFrame:
    return sample_table(experiment)


@pytest.fixture(scope="session")
def gene_context(experiment: SyntheticExperiment):
    """Prepared gene-mode context of the 24-sample experiment."""
    return prepare(
        sample_table(experiment),
        target_mapping=experiment.mapping,
        aggregation_column="ens_gene",
    )


@pytest.fixture(scope="session")
def tested_context(gene_context):
    """Gene-mode context with reduced/full fits and their LRT."""
    ctx = fit(gene_context, "~sex + tissue", "reduced")
    ctx = fit(ctx, "~sex + tissue + treatment", "full")
    return lrt(ctx, "reduced", "full")
