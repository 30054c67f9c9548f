# streamlit_app.py
"""
isoflow - Streamlit viewer for a fitted analysis context.

Started by ``isoflow.api.live``:
    streamlit run isoflow/streamlit_app.py -- <context snapshot>
"""

import sys

import streamlit as st

from isoflow.core import IsoflowCoreError
from isoflow.services.analysis.model_service import ModelService
from isoflow.services.analysis.results_service import ResultsService, filter_significant
from isoflow.services.visualization.live_service import load_snapshot
from isoflow.services.visualization.visualization_service import VisualizationService

st.set_page_config(
    page_title="isoflow",
    layout="wide",
    initial_sidebar_state="expanded",
)


@st.cache_resource
def get_context(path: str):
    return load_snapshot(path)


if len(sys.argv) < 2:
    st.error("No context snapshot given. Launch the viewer with isoflow.api.live(ctx).")
    st.stop()

ctx = get_context(sys.argv[1])
model_service = ModelService()
results_service = ResultsService()
viz = VisualizationService()

# -----------------------
# Sidebar
# -----------------------
st.sidebar.markdown("## **isoflow**")
st.sidebar.markdown(
    f"{ctx.adata.n_obs} samples · {ctx.adata.n_vars} targets · "
    f"{len(ctx.filtered_ids)} pass the filter"
)
st.sidebar.markdown("---")
with st.sidebar.expander("Models", expanded=True):
    for name, formula in model_service.list_models(ctx).items():
        st.markdown(f"- **{name}**: `{formula}`")
with st.sidebar.expander("Tests", expanded=True):
    for kind, names in model_service.list_tests(ctx).items():
        st.markdown(f"- **{kind}**: {', '.join(names)}")

covariates = [c for c in ctx.sample_metadata.columns if c not in ("sample", "path")]

tab_results, tab_volcano, tab_pca, tab_bootstrap, tab_meanvar, tab_design = st.tabs(
    ["Results", "Volcano", "PCA", "Bootstraps", "Mean-variance", "Design"]
)

test_choices = [
    (kind, name) for kind, names in model_service.list_tests(ctx).items() for name in names
]

with tab_results:
    if not test_choices:
        st.info("No tests have been run on this context.")
    else:
        kind, name = st.selectbox(
            "Test", test_choices, format_func=lambda t: f"{t[0]}: {t[1]}"
        )
        aggregate = st.checkbox(
            "Aggregate to genes", value=ctx.gene_mode, disabled=not ctx.gene_mode
        )
        threshold = st.slider("qval threshold", 0.0, 1.0, 0.05, 0.01)
        try:
            table, _, _ = results_service.results(
                ctx, name, test_type=kind, pval_aggregate=aggregate
            )
        except IsoflowCoreError as e:
            st.error(str(e))
        else:
            significant = filter_significant(table, threshold)
            st.markdown(f"**{len(significant)}** of {len(table)} rows with qval <= {threshold}")
            st.dataframe(significant, use_container_width=True)
            st.download_button(
                "Download TSV",
                significant.to_csv(sep="\t", index=False),
                file_name=f"{name.replace(':', '_')}_{kind}.tsv",
            )

with tab_volcano:
    if not test_choices:
        st.info("No tests have been run on this context.")
    else:
        kind, name = st.selectbox(
            "Test ", test_choices, format_func=lambda t: f"{t[0]}: {t[1]}"
        )
        fig, _, _ = viz.volcano_plot(ctx, name, test_type=kind)
        st.plotly_chart(fig, use_container_width=True)

with tab_pca:
    color_by = st.selectbox("Color by", [None] + covariates)
    fig, stats, _ = viz.pca_plot(ctx, color_by=color_by)
    st.plotly_chart(fig, use_container_width=True)

with tab_bootstrap:
    if not ctx.bootstraps:
        st.info("No bootstraps were read for this context.")
    else:
        target = st.selectbox("Transcript", list(ctx.filtered_ids))
        color_by = st.selectbox("Color by ", [None] + covariates)
        fig, _, _ = viz.bootstrap_plot(ctx, target, color_by=color_by)
        st.plotly_chart(fig, use_container_width=True)

with tab_meanvar:
    fits = list(ctx.fits)
    if not fits:
        st.info("No models have been fitted.")
    else:
        fit_name = st.selectbox("Model", fits)
        fig, _, _ = viz.mean_variance_plot(ctx, fit_name)
        st.plotly_chart(fig, use_container_width=True)

with tab_design:
    st.dataframe(ctx.sample_metadata, use_container_width=True)
    if ctx.size_factors is not None:
        st.markdown("**Size factors**")
        st.dataframe(ctx.size_factors.to_frame(), use_container_width=True)
    st.markdown("**Provenance**")
    for step in ctx.provenance:
        st.markdown(f"- `{step.operation}`: {step.description}")
