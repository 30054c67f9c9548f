"""
Unit tests for the results service.

Tests the weighted Lancaster aggregation, transcript- and gene-level results
tables and significance filtering.
"""

import dataclasses

import numpy as np
import pandas as pd
import pytest
from scipy import stats as sp_stats

from isoflow.core import AggregationError, TestNotFoundError
from isoflow.services.analysis.model_service import ModelService
from isoflow.services.analysis.quantification_service import QuantificationService
from isoflow.services.analysis.results_service import (
    GENE_COLUMNS,
    ResultsService,
    filter_significant,
    lancaster,
    lancaster_weights,
)
from mock_data import gene_id, transcript_id


@pytest.fixture
def service():
    return ResultsService()


@pytest.fixture
def transcript_context(small_experiment, make_sample_table):
    """Transcript-mode context of the small experiment with an LRT."""
    ctx, _, _ = QuantificationService().prepare(make_sample_table(small_experiment))
    models = ModelService()
    ctx, _, _ = models.fit(ctx, "~1", "reduced")
    ctx, _, _ = models.fit(ctx, "~treatment", "full")
    ctx, _, _ = models.lrt(ctx, "reduced", "full")
    return ctx


class TestLancaster:
    """Test p-value aggregation."""

    def test_single_pvalue_is_returned(self):
        assert lancaster(np.array([0.03]), np.array([250.0])) == pytest.approx(0.03)

    def test_unit_weights_match_fisher(self):
        pvals = np.array([0.01, 0.2, 0.04])

        expected = sp_stats.combine_pvalues(pvals, method="fisher")[1]

        assert lancaster(pvals, np.ones(3)) == pytest.approx(expected)

    def test_nan_and_zero_weight_dropped(self):
        pvals = np.array([0.03, np.nan, 0.5])
        weights = np.array([4.0, 2.0, 0.0])

        assert lancaster(pvals, weights) == pytest.approx(0.03)

    def test_nothing_left_is_nan(self):
        assert np.isnan(lancaster(np.array([np.nan]), np.array([1.0])))
        assert np.isnan(lancaster(np.array([]), np.array([])))

    def test_single_nonpositive_weight_keeps_pvalue(self):
        assert lancaster(np.array([1.0]), np.array([-0.347])) == 1.0
        assert lancaster(np.array([0.2]), np.array([0.0])) == pytest.approx(0.2)

    def test_all_nonpositive_weights_fall_back_to_fisher(self):
        pvals = np.array([0.01, 0.2, np.nan])
        weights = np.array([-0.5, 0.0, 3.0])

        expected = sp_stats.combine_pvalues(pvals[:2], method="fisher")[1]

        assert lancaster(pvals, weights) == pytest.approx(expected)
        assert list(lancaster_weights(pvals, weights)) == [1.0, 1.0, 0.0]

    def test_positive_weights_take_precedence(self):
        weights = lancaster_weights(np.array([0.01, 0.2]), np.array([2.5, -0.5]))

        assert list(weights) == [2.5, 0.0]

    def test_small_pvalues_combine_to_smaller(self):
        combined = lancaster(np.array([0.01, 0.01]), np.array([3.0, 3.0]))

        assert 0 <= combined < 0.01


class TestGeneResults:
    """Test gene-level results of the 24-sample experiment."""

    def test_gene_table_columns(self, service, tested_context):
        table, stats, ir = service.results(tested_context, "reduced:full", "lrt")

        assert list(table.columns) == ["ens_gene"] + GENE_COLUMNS
        assert stats["aggregated"] is True
        assert ir.operation == "isoflow.results"
        assert ir.validate_rendered_code()

    def test_one_row_per_tested_gene(self, service, tested_context, experiment):
        table, _, _ = service.results(tested_context, "reduced:full", "lrt")

        # every transcript of the last gene fails the filter
        assert gene_id(experiment.config.n_genes - 1) not in set(table["ens_gene"])
        assert len(table) == experiment.config.n_genes - 1
        assert table["ens_gene"].is_unique

    def test_aggregated_transcript_counts(self, service, tested_context):
        table, _, _ = service.results(tested_context, "reduced:full", "lrt")
        counts = table.set_index("ens_gene")["num_aggregated_transcripts"]

        assert (counts >= 1).all()
        assert counts[gene_id(2)] == 2
        assert counts[gene_id(0)] == 3
        assert counts.sum() == len(tested_context.filtered_ids)

    def test_low_abundance_transcripts_still_aggregate(self, service, tested_context):
        result = tested_context.get_test("reduced:full", "lrt")
        table = result.table.copy()
        # transcript 0 alongside positive weights; all of gene 1 below zero
        low = [transcript_id(i) for i in (0, 3, 4, 5)]
        table.loc[low, "mean_obs"] = -0.347
        lowered = dataclasses.replace(result, table=table)

        genes = service.gene_table(tested_context, lowered).set_index("ens_gene")

        assert genes.loc[gene_id(0), "num_aggregated_transcripts"] == 2
        assert genes.loc[gene_id(1), "num_aggregated_transcripts"] == 3
        assert genes["pval"].notna().all()
        assert genes["qval"].notna().all()
        expected = sp_stats.combine_pvalues(
            table.loc[[transcript_id(i) for i in (3, 4, 5)], "pval"], method="fisher"
        )[1]
        assert genes.loc[gene_id(1), "pval"] == pytest.approx(expected)

    def test_single_low_abundance_transcript_keeps_pvalue(self, service, tested_context):
        result = tested_context.get_test("reduced:full", "lrt")
        table = result.table.copy()
        # gene 2 has transcripts 6 and 7 tested; leave only 6
        table.loc[transcript_id(7), "pval"] = np.nan
        table.loc[transcript_id(6), "mean_obs"] = -0.347
        lowered = dataclasses.replace(result, table=table)

        genes = service.gene_table(tested_context, lowered).set_index("ens_gene")

        assert genes.loc[gene_id(2), "num_aggregated_transcripts"] == 1
        assert genes.loc[gene_id(2), "pval"] == table.loc[transcript_id(6), "pval"]

    def test_sum_mean_obs_counts(self, service, tested_context):
        table, _, _ = service.results(tested_context, "reduced:full", "lrt")
        obs_norm = pd.DataFrame(
            np.asarray(tested_context.adata.layers["obs_norm"]),
            columns=tested_context.adata.var_names,
        )
        members = [transcript_id(i) for i in range(3)]

        row = table.set_index("ens_gene").loc[gene_id(0)]
        assert row["sum_mean_obs_counts"] == pytest.approx(obs_norm[members].mean().sum())

    def test_sorted_by_qval(self, service, tested_context):
        table, _, _ = service.results(tested_context, "reduced:full", "lrt")

        assert table["qval"].is_monotonic_increasing
        assert ((table["pval"] >= 0) & (table["pval"] <= 1)).all()

    def test_de_genes_significant(self, service, tested_context, experiment):
        table, _, _ = service.results(tested_context, "reduced:full", "lrt")
        significant = set(filter_significant(table, 0.05)["ens_gene"])

        assert set(experiment.de_genes) <= significant

    def test_wald_gene_table(self, service, tested_context):
        ctx, _, _ = ModelService().wald_test(tested_context, "treatment[T.drug]", "full")

        table, stats, _ = service.results(ctx, "treatment[T.drug]", "wt", which_model="full")

        assert stats["test_type"] == "wt"
        assert list(table.columns) == ["ens_gene"] + GENE_COLUMNS


class TestTranscriptResults:
    """Test transcript-level results."""

    def test_gene_mode_without_aggregation(self, service, tested_context, experiment):
        table, stats, _ = service.results(
            tested_context, "reduced:full", "lrt", pval_aggregate=False
        )

        assert table.columns[0] == "target_id"
        assert {"ens_gene", "ext_gene", "test_stat", "degrees_free", "final_sigma_sq"} <= set(
            table.columns
        )
        assert len(table) == experiment.config.n_transcripts
        assert stats["aggregated"] is False

    def test_filtered_transcripts_last(self, service, tested_context, experiment):
        table, _, _ = service.results(
            tested_context, "reduced:full", "lrt", pval_aggregate=False
        )
        n_low = len(experiment.config.low_transcripts)

        assert table["pval"].iloc[-n_low:].isna().all()
        assert table["pval"].iloc[:-n_low].notna().all()
        assert table["qval"].iloc[:-n_low].is_monotonic_increasing
        low = {transcript_id(i) for i in experiment.config.low_transcripts}
        assert set(table["target_id"].iloc[-n_low:]) == low

    def test_wald_transcript_columns(self, service, tested_context):
        ctx, _, _ = ModelService().wald_test(tested_context, "sex[T.male]", "full")

        table, _, _ = service.results(ctx, "sex[T.male]", "wt", pval_aggregate=False)

        assert {"b", "se_b"} <= set(table.columns)
        assert "test_stat" not in table.columns

    def test_transcript_mode_default(self, service, transcript_context):
        table, stats, _ = service.results(transcript_context, "reduced:full", "lrt")

        assert stats["aggregated"] is False
        assert table.columns[0] == "target_id"
        assert "ens_gene" not in table.columns
        assert list(table.columns[1:3]) == ["pval", "qval"]


class TestResultsErrors:
    """Test failure modes of results extraction."""

    def test_aggregation_outside_gene_mode(self, service, transcript_context):
        with pytest.raises(AggregationError):
            service.results(transcript_context, "reduced:full", "lrt", pval_aggregate=True)

    def test_unknown_test(self, service, tested_context):
        with pytest.raises(TestNotFoundError) as exc_info:
            service.results(tested_context, "full:reduced", "lrt")

        assert exc_info.value.details["available"] == {"lrt": ["reduced:full"]}

    def test_unknown_test_type(self, service, tested_context):
        with pytest.raises(TestNotFoundError, match="Unknown test type"):
            service.results(tested_context, "reduced:full", "anova")

    def test_wald_model_mismatch(self, service, tested_context):
        ctx, _, _ = ModelService().wald_test(tested_context, "treatment[T.drug]", "full")

        with pytest.raises(TestNotFoundError, match="was run on model"):
            service.results(ctx, "treatment[T.drug]", "wt", which_model="reduced")


class TestFilterSignificant:
    """Test significance filtering."""

    @pytest.fixture
    def table(self):
        return pd.DataFrame(
            {
                "target_id": ["a", "b", "c", "d", "e"],
                "pval": [0.001, 0.2, 0.01, np.nan, 0.04],
                "qval": [0.004, 0.25, 0.03, np.nan, 0.05],
            }
        )

    def test_threshold_is_inclusive(self, table):
        result = filter_significant(table, 0.05)

        assert result["target_id"].tolist() == ["a", "c", "e"]

    def test_idempotent(self, table):
        once = filter_significant(table, 0.03)

        pd.testing.assert_frame_equal(filter_significant(once, 0.03), once)

    def test_other_column(self, table):
        result = filter_significant(table, 0.01, column="pval")

        assert result["target_id"].tolist() == ["a", "c"]

    def test_missing_column(self, table):
        with pytest.raises(ValueError, match="not found"):
            filter_significant(table, column="padj")

    def test_subset_of_results(self, service, tested_context):
        table, _, _ = service.results(tested_context, "reduced:full", "lrt")

        significant = filter_significant(table, 0.05)

        assert len(significant) <= len(table)
        assert significant.index.isin(table.index).all()
        assert (significant["qval"] <= 0.05).all()
