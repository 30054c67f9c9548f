"""
Results extraction service.

Turns a stored test into a results table, either per transcript or
aggregated per gene with the weighted Lancaster method, and filters tables
by significance.
"""

from typing import Any, Dict, Optional, Tuple

import numpy as np
import pandas as pd
from scipy import stats as sp_stats

from isoflow.core import AggregationError, TestNotFoundError
from isoflow.core.analysis_ir import AnalysisStep
from isoflow.core.context import TEST_TYPES, AnalysisContext, TestResult
from isoflow.services.analysis.model_service import adjust_pvalues
from isoflow.utils.logger import get_logger

logger = get_logger(__name__)

VARIANCE_COLUMNS = [
    "rss",
    "mean_obs",
    "var_obs",
    "tech_var",
    "sigma_sq",
    "smooth_sigma_sq",
    "final_sigma_sq",
]
STATISTIC_COLUMNS = {
    "lrt": ["test_stat", "degrees_free"],
    "wt": ["b", "se_b"],
}
GENE_COLUMNS = ["num_aggregated_transcripts", "sum_mean_obs_counts", "pval", "qval"]
# columns of ``AnalysisContext.adata.var`` that are not annotations
_INTERNAL_VAR_COLUMNS = ("length", "passed_filter")


def lancaster_weights(pvals: np.ndarray, weights: np.ndarray) -> np.ndarray:
    """
    Weights that :func:`lancaster` applies, 0 where a p-value does not contribute.

    NaN p-values never contribute. Among the rest, only those with a finite
    positive weight contribute. When none of them has one, every non-NaN
    p-value contributes with unit weight, which is Fisher's method.
    """
    pvals = np.asarray(pvals, dtype=np.float64)
    weights = np.asarray(weights, dtype=np.float64)
    tested = ~np.isnan(pvals)
    positive = tested & np.isfinite(weights) & (weights > 0)
    if positive.any():
        return np.where(positive, weights, 0.0)
    return np.where(tested, 1.0, 0.0)


def lancaster(pvals: np.ndarray, weights: np.ndarray) -> float:
    """
    Weighted Lancaster combination of p-values.

    ``T = sum(chi2.isf(p_i, 2 w_i))`` is compared against a chi-squared
    distribution with ``2 sum(w_i)`` degrees of freedom, using the weights
    from :func:`lancaster_weights`. A single contributing p-value is returned
    unchanged.
    """
    pvals = np.asarray(pvals, dtype=np.float64)
    weights = lancaster_weights(pvals, weights)
    keep = weights > 0
    pvals, weights = pvals[keep], weights[keep]

    if len(pvals) == 0:
        return np.nan
    if len(pvals) == 1:
        return float(pvals[0])

    statistic = np.sum(sp_stats.chi2.isf(pvals, 2 * weights))
    return float(sp_stats.chi2.sf(statistic, 2 * np.sum(weights)))


def filter_significant(
    table: pd.DataFrame, threshold: float = 0.05, column: str = "qval"
) -> pd.DataFrame:
    """
    Rows of ``table`` whose ``column`` is at most ``threshold``.

    Row order is preserved and rows with a missing value are dropped.
    """
    if column not in table.columns:
        raise ValueError(
            f"Column '{column}' not found in results table. "
            f"Available columns: {list(table.columns)}"
        )
    return table.loc[table[column] <= threshold]


class ResultsService:
    """
    Stateless service for results tables.

    ``results`` follows the three-tuple convention and returns
    ``(pd.DataFrame, stats_dict, AnalysisStep)``.
    """

    def __init__(self, config=None, **kwargs):
        logger.debug("Initializing stateless ResultsService")
        self.config = config or {}

    def results(
        self,
        context: AnalysisContext,
        test: str,
        test_type: str = "lrt",
        which_model: Optional[str] = None,
        pval_aggregate: Optional[bool] = None,
    ) -> Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]:
        """
        Extract the results table of a stored test.

        Args:
            context: Context holding the test
            test: Test name (``"reduced:full"`` for an LRT, the coefficient
                name for a Wald test)
            test_type: ``"lrt"`` or ``"wt"``
            which_model: Model the Wald test must belong to
            pval_aggregate: Aggregate to genes; defaults to the context's
                gene mode

        Returns:
            Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]

        Raises:
            TestNotFoundError: If no such test was run
            AggregationError: If aggregation is requested outside gene mode
        """
        if test_type not in TEST_TYPES:
            raise TestNotFoundError(
                f"Unknown test type '{test_type}'. Valid types: {list(TEST_TYPES)}",
                details={"test_type": test_type},
            )
        result = context.get_test(test, test_type)
        if test_type == "wt" and which_model is not None:
            if result.models.get("model") != which_model:
                raise TestNotFoundError(
                    f"Wald test '{test}' was run on model "
                    f"'{result.models.get('model')}', not '{which_model}'",
                    details={"test": test, "which_model": which_model},
                )

        if pval_aggregate is None:
            pval_aggregate = context.gene_mode
        if pval_aggregate and not context.gene_mode:
            raise AggregationError(
                "P-value aggregation requires a target mapping and an "
                "aggregation column; prepare the context with both",
                details={"test": test},
            )

        if pval_aggregate:
            table = self.gene_table(context, result)
        else:
            table = self.transcript_table(context, result)

        n_significant = int((table["qval"] <= 0.05).sum())
        stats = {
            "test": test,
            "test_type": test_type,
            "aggregated": bool(pval_aggregate),
            "n_rows": len(table),
            "n_tested": int(table["pval"].notna().sum()),
            "n_significant_0.05": n_significant,
        }
        logger.info(
            f"Results for {test_type} '{test}': {n_significant} of {len(table)} "
            f"{'genes' if pval_aggregate else 'transcripts'} with qval <= 0.05"
        )

        ir = AnalysisStep(
            operation="isoflow.results",
            tool_name="results",
            description=f"Extract {'gene' if pval_aggregate else 'transcript'} "
            f"results of {test_type} '{test}'",
            library="scipy" if pval_aggregate else "pandas",
            code_template=(
                "table = results(ctx, {{ test | tojson }}, test_type={{ test_type | tojson }}, "
                "{% if which_model %}which_model={{ which_model | tojson }}, {% endif %}"
                "pval_aggregate={{ pval_aggregate }})"
            ),
            imports=["from isoflow.api import results"],
            parameters={
                "test": test,
                "test_type": test_type,
                "which_model": which_model,
                "pval_aggregate": bool(pval_aggregate),
            },
            input_entities=["ctx"],
            output_entities=["table"],
        )
        return table, stats, ir

    def transcript_table(self, context: AnalysisContext, result: TestResult) -> pd.DataFrame:
        """
        Per-transcript table over all targets.

        Targets that did not pass the filter are appended after the tested
        ones with NaN statistics.
        """
        annotation = self._annotation(context)
        statistics = result.table.reindex(context.adata.var_names)

        columns = (
            ["pval", "qval"] + STATISTIC_COLUMNS[result.test_type] + VARIANCE_COLUMNS
        )
        table = annotation.join(statistics[columns])
        table = table.sort_values("qval", kind="mergesort", na_position="last")
        return table.reset_index()

    def gene_table(self, context: AnalysisContext, result: TestResult) -> pd.DataFrame:
        """Lancaster-aggregated table with one row per value of the aggregation column."""
        column = context.aggregation_column
        annotation = self._annotation(context)

        mean_counts = pd.Series(
            np.asarray(context.adata.layers["obs_norm"]).mean(axis=0),
            index=context.adata.var_names,
        )
        tested = result.table[["pval", "mean_obs"]].join(annotation[[column]])
        tested["mean_obs_counts"] = mean_counts.reindex(tested.index)
        tested = tested[tested["pval"].notna() & tested[column].notna()].copy()
        tested[column] = tested[column].astype(str)

        if tested.empty:
            raise AggregationError(
                f"No tested transcript maps to a value of '{column}'",
                details={"aggregation_column": column},
            )

        rows = []
        for key, group in tested.groupby(column, sort=True):
            weights = lancaster_weights(
                group["pval"].to_numpy(), group["mean_obs"].to_numpy()
            )
            rows.append(
                {
                    column: key,
                    "num_aggregated_transcripts": int(np.count_nonzero(weights)),
                    "sum_mean_obs_counts": float(group["mean_obs_counts"].sum()),
                    "pval": lancaster(
                        group["pval"].to_numpy(), group["mean_obs"].to_numpy()
                    ),
                }
            )
        table = pd.DataFrame(rows)
        table["qval"] = adjust_pvalues(table["pval"])
        table = table.sort_values("qval", kind="mergesort", na_position="last")
        return table.reset_index(drop=True)[[column] + GENE_COLUMNS]

    def _annotation(self, context: AnalysisContext) -> pd.DataFrame:
        var = context.adata.var
        columns = [c for c in var.columns if c not in _INTERNAL_VAR_COLUMNS]
        annotation = var[columns].copy()
        annotation.index = pd.Index(context.adata.var_names, name="target_id")
        return annotation
