"""
Visualization service for isoflow analysis contexts.

Builds interactive Plotly figures from an :class:`AnalysisContext`: volcano
plots of stored tests, a sample PCA of the transformed abundances, the
bootstrap distribution of one transcript and the mean-variance shrinkage
fit of a model.
"""

from typing import Any, Dict, Optional, Tuple

import numpy as np
import pandas as pd
import plotly.express as px
import plotly.graph_objects as go

from isoflow.core import IsoflowCoreError
from isoflow.core.analysis_ir import AnalysisStep
from isoflow.core.context import AnalysisContext
from isoflow.services.analysis.results_service import ResultsService
from isoflow.utils.logger import get_logger

logger = get_logger(__name__)


class VisualizationError(IsoflowCoreError):
    """Raised when a figure cannot be built from the context."""

    pass


class VisualizationService:
    """
    Plotly figures for fitted and tested analysis contexts.

    Every method returns ``(go.Figure, stats_dict, AnalysisStep)``.
    """

    def __init__(self, config=None, **kwargs):
        """
        Initialize the visualization service.

        Args:
            config: Optional configuration dict (unused)
            **kwargs: Additional arguments (ignored)
        """
        logger.debug("Initializing VisualizationService")
        self.config = config or {}
        self.results_service = ResultsService()

        self.significance_colors = {
            "significant": "red",
            "not_significant": "lightgray",
        }
        self.default_width = 900
        self.default_height = 700
        self.default_marker_size = 5
        self.default_opacity = 0.7

    def volcano_plot(
        self,
        context: AnalysisContext,
        test: str,
        test_type: str = "wt",
        qval_threshold: float = 0.05,
        title: Optional[str] = None,
    ) -> Tuple[go.Figure, Dict[str, Any], AnalysisStep]:
        """
        Effect (``b`` for Wald tests, ``test_stat`` for LRTs) against
        ``-log10(qval)`` for every tested transcript.

        Raises:
            TestNotFoundError: If the test was not run
        """
        logger.info(f"Creating volcano plot for {test_type} '{test}'")
        table, _, _ = self.results_service.results(
            context, test, test_type=test_type, pval_aggregate=False
        )
        table = table[table["pval"].notna()]

        x_column = "b" if test_type == "wt" else "test_stat"
        x = table[x_column].to_numpy()
        qval = table["qval"].fillna(1.0).to_numpy()
        neg_log_q = -np.log10(qval + 1e-300)
        labels = self._hover_labels(table)
        significant = qval <= qval_threshold
        n_significant = int(significant.sum())

        fig = go.Figure()
        for mask, name, color in (
            (~significant, "Not significant", self.significance_colors["not_significant"]),
            (significant, f"qval <= {qval_threshold} ({n_significant})",
             self.significance_colors["significant"]),
        ):
            if not mask.any():
                continue
            fig.add_trace(
                go.Scatter(
                    x=x[mask],
                    y=neg_log_q[mask],
                    mode="markers",
                    name=name,
                    marker=dict(
                        color=color,
                        size=self.default_marker_size,
                        opacity=self.default_opacity,
                    ),
                    text=labels[mask],
                    hovertemplate="%{text}<br>"
                    + x_column
                    + ": %{x:.3f}<br>-log10(qval): %{y:.2f}<extra></extra>",
                )
            )

        fig.add_hline(
            y=-np.log10(qval_threshold),
            line_dash="dash",
            line_color="darkgray",
            annotation_text=f"qval = {qval_threshold}",
            annotation_position="right",
        )
        fig.update_layout(
            title=title or f"{test} ({test_type}): {n_significant} significant",
            xaxis_title=x_column,
            yaxis_title="-log10(qval)",
            width=self.default_width,
            height=self.default_height,
            plot_bgcolor="white",
            hovermode="closest",
        )

        stats = {
            "plot_type": "volcano_plot",
            "test": test,
            "test_type": test_type,
            "n_transcripts": len(table),
            "n_significant": n_significant,
            "qval_threshold": qval_threshold,
        }
        ir = AnalysisStep(
            operation="visualization.volcano_plot",
            tool_name="volcano_plot",
            description=f"Volcano plot of {test_type} '{test}'",
            library="plotly",
            code_template=(
                "table = results(ctx, {{ test | tojson }}, test_type={{ test_type | tojson }}, "
                "pval_aggregate=False)\n"
                "table = table[table['pval'].notna()]\n"
                "fig = px.scatter(x=table[{{ x_column | tojson }}], "
                "y=-np.log10(table['qval'] + 1e-300))"
            ),
            imports=[
                "import numpy as np",
                "import plotly.express as px",
                "from isoflow.api import results",
            ],
            parameters={
                "test": test,
                "test_type": test_type,
                "x_column": x_column,
                "qval_threshold": qval_threshold,
            },
            input_entities=["ctx"],
            output_entities=["fig"],
        )
        return fig, stats, ir

    def pca_plot(
        self,
        context: AnalysisContext,
        color_by: Optional[str] = None,
        n_components: int = 2,
    ) -> Tuple[go.Figure, Dict[str, Any], AnalysisStep]:
        """
        PCA of the transformed abundances of filtered transcripts.

        Raises:
            VisualizationError: If ``color_by`` is not a sample covariate
        """
        metadata = context.sample_metadata
        if color_by is not None and color_by not in metadata.columns:
            raise VisualizationError(
                f"Covariate '{color_by}' not found. "
                f"Available: {list(metadata.columns)}",
                details={"color_by": color_by},
            )

        values = context.transformed(filtered=True).to_numpy()
        centered = values - values.mean(axis=0)
        u, s, _ = np.linalg.svd(centered, full_matrices=False)
        n_components = min(n_components, len(s))
        scores = u[:, :n_components] * s[:n_components]
        total = np.sum(s**2)
        explained = (s[:n_components] ** 2 / total) if total > 0 else np.zeros(n_components)

        frame = pd.DataFrame(
            scores, columns=[f"PC{i + 1}" for i in range(n_components)]
        )
        frame["sample"] = context.sample_ids
        if color_by is not None:
            frame[color_by] = metadata[color_by].astype(str).to_numpy()

        fig = px.scatter(
            frame,
            x="PC1",
            y="PC2" if n_components > 1 else None,
            color=color_by,
            hover_name="sample",
            width=self.default_width,
            height=self.default_height,
        )
        fig.update_layout(
            title="Sample PCA",
            xaxis_title=f"PC1 ({explained[0]:.1%})",
            yaxis_title=f"PC2 ({explained[1]:.1%})" if n_components > 1 else "",
            plot_bgcolor="white",
        )

        stats = {
            "plot_type": "pca_plot",
            "n_samples": len(frame),
            "n_transcripts": values.shape[1],
            "explained_variance_ratio": [float(v) for v in explained],
            "color_by": color_by,
        }
        ir = AnalysisStep(
            operation="visualization.pca_plot",
            tool_name="pca_plot",
            description="PCA of transformed abundances",
            library="numpy",
            code_template=(
                "values = ctx.transformed().to_numpy()\n"
                "u, s, _ = np.linalg.svd(values - values.mean(axis=0), full_matrices=False)\n"
                "fig = px.scatter(x=u[:, 0] * s[0], y=u[:, 1] * s[1])"
            ),
            imports=["import numpy as np", "import plotly.express as px"],
            parameters={"color_by": color_by, "n_components": n_components},
            input_entities=["ctx"],
            output_entities=["fig"],
        )
        return fig, stats, ir

    def bootstrap_plot(
        self,
        context: AnalysisContext,
        target_id: str,
        color_by: Optional[str] = None,
    ) -> Tuple[go.Figure, Dict[str, Any], AnalysisStep]:
        """
        Boxplots of the normalized bootstrap counts of ``target_id`` per sample.

        Raises:
            VisualizationError: If the target is unknown or no bootstraps
                were read
        """
        if target_id not in context.adata.var_names:
            raise VisualizationError(
                f"Unknown target '{target_id}'", details={"target_id": target_id}
            )
        if not context.bootstraps:
            raise VisualizationError(
                "No bootstraps in this context; quantify with kallisto -b and "
                "read the HDF5 outputs"
            )

        position = context.adata.var_names.get_loc(target_id)
        metadata = context.sample_metadata
        frames = []
        for sample, bootstraps in context.bootstraps.items():
            frame = pd.DataFrame(
                {
                    "sample": sample,
                    "scaled_count": bootstraps[:, position]
                    / context.size_factors[sample],
                }
            )
            if color_by is not None:
                frame[color_by] = str(metadata.loc[sample, color_by])
            frames.append(frame)
        data = pd.concat(frames, ignore_index=True)

        fig = px.box(
            data,
            x="sample",
            y="scaled_count",
            color=color_by,
            width=self.default_width,
            height=self.default_height,
        )
        fig.update_layout(title=f"Bootstraps of {target_id}", plot_bgcolor="white")

        stats = {
            "plot_type": "bootstrap_plot",
            "target_id": target_id,
            "n_samples": len(context.bootstraps),
        }
        ir = AnalysisStep(
            operation="visualization.bootstrap_plot",
            tool_name="bootstrap_plot",
            description=f"Bootstrap boxplot of {target_id}",
            library="plotly",
            code_template=(
                "position = ctx.adata.var_names.get_loc({{ target_id | tojson }})\n"
                "data = pd.concat([pd.DataFrame({'sample': s, 'scaled_count': "
                "bs[:, position] / ctx.size_factors[s]}) for s, bs in ctx.bootstraps.items()])\n"
                "fig = px.box(data, x='sample', y='scaled_count')"
            ),
            imports=["import pandas as pd", "import plotly.express as px"],
            parameters={"target_id": target_id, "color_by": color_by},
            input_entities=["ctx"],
            output_entities=["fig"],
        )
        return fig, stats, ir

    def mean_variance_plot(
        self, context: AnalysisContext, fit_name: str = "full"
    ) -> Tuple[go.Figure, Dict[str, Any], AnalysisStep]:
        """
        ``sigma_sq_pmax ** 0.25`` against ``mean_obs`` with the shrinkage curve.

        Raises:
            ModelNotFoundError: If the fit does not exist
        """
        fit = context.get_fit(fit_name)
        summary = fit.summary
        mean_obs = summary["mean_obs"].to_numpy()
        root_sigma = summary["sigma_sq_pmax"].to_numpy() ** 0.25
        iqr_mask = fit.shrinkage.get("iqr_mask", np.zeros(len(summary), dtype=bool))

        fig = go.Figure()
        fig.add_trace(
            go.Scatter(
                x=mean_obs[~iqr_mask],
                y=root_sigma[~iqr_mask],
                mode="markers",
                name="Outside bin IQR",
                marker=dict(color="lightgray", size=self.default_marker_size, opacity=0.4),
                text=summary.index[~iqr_mask],
            )
        )
        fig.add_trace(
            go.Scatter(
                x=mean_obs[iqr_mask],
                y=root_sigma[iqr_mask],
                mode="markers",
                name="Trend points",
                marker=dict(
                    color="steelblue",
                    size=self.default_marker_size,
                    opacity=self.default_opacity,
                ),
                text=summary.index[iqr_mask],
            )
        )
        if "curve_x" in fit.shrinkage:
            fig.add_trace(
                go.Scatter(
                    x=fit.shrinkage["curve_x"],
                    y=fit.shrinkage["curve_y"] ** 0.25,
                    mode="lines",
                    name="Shrinkage fit",
                    line=dict(color="red", width=2),
                )
            )
        fig.update_layout(
            title=f"Mean-variance relationship ({fit_name})",
            xaxis_title="mean(log(counts + 0.5))",
            yaxis_title="sigma^(1/2)",
            width=self.default_width,
            height=self.default_height,
            plot_bgcolor="white",
        )

        stats = {
            "plot_type": "mean_variance_plot",
            "fit_name": fit_name,
            "n_transcripts": len(summary),
            "n_trend_points": int(np.sum(iqr_mask)),
        }
        ir = AnalysisStep(
            operation="visualization.mean_variance_plot",
            tool_name="mean_variance_plot",
            description=f"Mean-variance plot of fit '{fit_name}'",
            library="plotly",
            code_template=(
                "summary = ctx.get_fit({{ fit_name | tojson }}).summary\n"
                "fig = px.scatter(x=summary['mean_obs'], y=summary['sigma_sq_pmax'] ** 0.25)"
            ),
            imports=["import plotly.express as px"],
            parameters={"fit_name": fit_name},
            input_entities=["ctx"],
            output_entities=["fig"],
        )
        return fig, stats, ir

    @staticmethod
    def _hover_labels(table: pd.DataFrame) -> np.ndarray:
        if "ext_gene" in table.columns:
            genes = table["ext_gene"].fillna("").astype(str)
            return (table["target_id"].astype(str) + " " + genes).str.strip().to_numpy()
        return table["target_id"].astype(str).to_numpy()
