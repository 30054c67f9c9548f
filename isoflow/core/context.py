"""
Analysis context threaded through the isoflow pipeline.

An :class:`AnalysisContext` is created once by the quantification service and
then passed through every fit and test. Mutating operations never modify a
context in place: they return a new context that shares the (read-only)
expression arrays and carries extended ``fits``/``tests``/``provenance``
collections. Callers keep using the value returned by the last call.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

import anndata
import numpy as np
import pandas as pd

from isoflow.core import ModelNotFoundError, TestNotFoundError
from isoflow.core.analysis_ir import AnalysisStep

TEST_TYPES = ("lrt", "wt")


@dataclass
class FittedModel:
    """
    A linear model fitted to every filtered transcript.

    Attributes:
        name: Fit name supplied by the caller (e.g. "full")
        formula: Formula string the design was built from
        design: Design matrix (samples x coefficients)
        beta: Coefficients (filtered transcripts x coefficients)
        residuals: Residuals on the transformed scale (samples x transcripts)
        summary: Per-transcript variance summary indexed by target_id with
            columns rss, sigma_sq, sigma_sq_pmax, smooth_sigma_sq,
            smooth_sigma_sq_pmax, final_sigma_sq, mean_obs, var_obs, tech_var
        shrinkage: Points and curve of the mean-variance shrinkage fit
    """

    name: str
    formula: str
    design: pd.DataFrame
    beta: pd.DataFrame
    residuals: np.ndarray
    summary: pd.DataFrame
    shrinkage: Dict[str, np.ndarray] = field(default_factory=dict)

    @property
    def coefficient_names(self) -> List[str]:
        return list(self.design.columns)

    @property
    def n_coefficients(self) -> int:
        return self.design.shape[1]

    @property
    def df_residual(self) -> int:
        return self.design.shape[0] - self.design.shape[1]


@dataclass
class TestResult:
    """
    Per-transcript statistics of one named test.

    ``table`` is indexed by target_id and always carries ``pval`` and
    ``qval``; likelihood-ratio tests add ``test_stat``/``degrees_free``,
    Wald tests add ``b``/``se_b``.
    """

    __test__ = False

    name: str
    test_type: str
    table: pd.DataFrame
    models: Dict[str, str] = field(default_factory=dict)


@dataclass
class AnalysisContext:
    """
    In-memory aggregate of quantifications, annotations, fits and tests.

    Attributes:
        adata: Samples x transcripts; ``X`` holds estimated counts, layers
            hold ``tpm``, ``eff_len``, ``obs_norm`` and ``obs_transformed``;
            ``obs`` is the sample metadata and ``var`` carries the target
            mapping columns plus a ``passed_filter`` flag.
        bootstraps: Per-sample bootstrap estimated counts
            (n_bootstraps x n_transcripts), empty when unavailable.
        target_mapping: Transcript-to-gene table used to annotate results.
        aggregation_column: Mapping column used to aggregate p-values.
        size_factors: Per-sample normalization factors.
        technical_variance: Bootstrap variance per filtered transcript.
        bootstrap_summary: Optional per-sample bootstrap quantiles.
        fits: Fitted models by name.
        tests: Test results by test type, then by name.
        provenance: Steps that produced this context, in order.
    """

    adata: anndata.AnnData
    bootstraps: Dict[str, np.ndarray] = field(default_factory=dict)
    target_mapping: Optional[pd.DataFrame] = None
    aggregation_column: Optional[str] = None
    size_factors: Optional[pd.Series] = None
    technical_variance: Optional[pd.Series] = None
    bootstrap_summary: Optional[pd.DataFrame] = None
    fits: Dict[str, FittedModel] = field(default_factory=dict)
    tests: Dict[str, Dict[str, TestResult]] = field(default_factory=dict)
    provenance: List[AnalysisStep] = field(default_factory=list)
    settings: Dict[str, Any] = field(default_factory=dict)

    @property
    def gene_mode(self) -> bool:
        """True when p-values can be aggregated to ``aggregation_column``."""
        return self.target_mapping is not None and self.aggregation_column is not None

    @property
    def sample_ids(self) -> List[str]:
        return list(self.adata.obs_names)

    @property
    def target_ids(self) -> List[str]:
        return list(self.adata.var_names)

    @property
    def filtered_ids(self) -> pd.Index:
        """Target ids that passed the expression filter."""
        mask = self.adata.var["passed_filter"].to_numpy(dtype=bool)
        return self.adata.var_names[mask]

    @property
    def sample_metadata(self) -> pd.DataFrame:
        return self.adata.obs.copy()

    def transformed(self, filtered: bool = True) -> pd.DataFrame:
        """Transformed observations as a samples x transcripts frame."""
        frame = pd.DataFrame(
            self.adata.layers["obs_transformed"],
            index=self.adata.obs_names,
            columns=self.adata.var_names,
        )
        if filtered:
            frame = frame.loc[:, self.filtered_ids]
        return frame

    def get_fit(self, name: str) -> FittedModel:
        if name not in self.fits:
            raise ModelNotFoundError(
                f"Model '{name}' has not been fitted. "
                f"Available fits: {sorted(self.fits)}",
                details={"model": name, "available": sorted(self.fits)},
            )
        return self.fits[name]

    def get_test(self, name: str, test_type: str) -> TestResult:
        available = {kind: sorted(names) for kind, names in self.tests.items()}
        if name not in self.tests.get(test_type, {}):
            raise TestNotFoundError(
                f"No '{test_type}' test named '{name}'. Available tests: {available}",
                details={"test": name, "test_type": test_type, "available": available},
            )
        return self.tests[test_type][name]

    def with_fit(self, fit: FittedModel, step: AnalysisStep) -> "AnalysisContext":
        """Return a new context with ``fit`` attached under its name."""
        fits = dict(self.fits)
        fits[fit.name] = fit
        return replace(self, fits=fits, provenance=self.provenance + [step])

    def with_test(self, result: TestResult, step: AnalysisStep) -> "AnalysisContext":
        """Return a new context with ``result`` attached under its type and name."""
        tests = {kind: dict(named) for kind, named in self.tests.items()}
        tests.setdefault(result.test_type, {})[result.name] = result
        return replace(self, tests=tests, provenance=self.provenance + [step])

    def __repr__(self) -> str:
        return (
            f"AnalysisContext(samples={self.adata.n_obs}, "
            f"targets={self.adata.n_vars}, "
            f"filtered={len(self.filtered_ids)}, "
            f"gene_mode={self.gene_mode}, "
            f"fits={sorted(self.fits)}, "
            f"tests={ {k: sorted(v) for k, v in self.tests.items()} })"
        )
