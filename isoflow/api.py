"""
Functional interface to the isoflow pipeline.

Each function wraps one service call, logs its statistics and returns only
the primary result. Mutating steps return a new :class:`AnalysisContext`
that must be passed to the next call::

    metadata = load_metadata("metadata.tsv", ["run", "sex", "tissue", "treatment"],
                             id_column="run", base="~/data")
    t2g = fetch_annotations(dataset="mmusculus_gene_ensembl", strip_versions=True)
    ctx = prepare(metadata, target_mapping=t2g, aggregation_column="ens_gene")
    ctx = fit(ctx, "~sex + tissue", "reduced")
    ctx = fit(ctx, "~sex + tissue + treatment", "full")
    ctx = lrt(ctx, "reduced", "full")
    table = filter_significant(results(ctx, "reduced:full", "lrt"), 0.05)
"""

import subprocess
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import pandas as pd

from isoflow.core import MetadataError
from isoflow.core.analysis_ir import export_provenance
from isoflow.core.context import AnalysisContext
from isoflow.services.analysis.model_service import ModelService
from isoflow.services.analysis.quantification_service import QuantificationService
from isoflow.services.analysis.results_service import ResultsService
from isoflow.services.analysis.results_service import (
    filter_significant as _filter_significant,
)
from isoflow.services.data_access.annotation_service import AnnotationService
from isoflow.services.metadata.sample_metadata_service import (
    PathTemplate,
    SampleMetadataService,
)
from isoflow.services.visualization.live_service import LiveViewerService
from isoflow.utils.logger import get_logger

logger = get_logger(__name__)

__all__ = [
    "load_metadata",
    "fetch_annotations",
    "load_annotations",
    "prepare",
    "fit",
    "lrt",
    "wt",
    "results",
    "filter_significant",
    "write_results",
    "models",
    "tests",
    "live",
]


def load_metadata(
    path: Union[str, Path],
    columns: Sequence[str],
    id_column: str,
    base: Optional[Union[str, Path]] = None,
    rename: Optional[Mapping[str, str]] = None,
    path_template: Optional[PathTemplate] = None,
    check_paths: bool = False,
) -> pd.DataFrame:
    """
    Read the sample sheet and derive each sample's quantification path.

    Either ``path_template`` or ``base`` must be given; with ``base`` the
    subdirectory and abundance file come from settings.
    """
    if path_template is None:
        if base is None:
            raise MetadataError("load_metadata needs either base or path_template")
        path_template = PathTemplate.from_settings(base)

    metadata, stats, _ = SampleMetadataService().load_sample_metadata(
        path,
        columns=columns,
        id_column=id_column,
        path_template=path_template,
        rename=rename,
        check_paths=check_paths,
    )
    logger.debug(f"load_metadata: {stats}")
    return metadata


def fetch_annotations(
    dataset: Optional[str] = None,
    host: Optional[str] = None,
    versioned: bool = False,
    strip_versions: bool = False,
    use_cache: bool = True,
) -> pd.DataFrame:
    """Transcript-to-gene mapping (``target_id``, ``ens_gene``, ``ext_gene``) from BioMart."""
    mapping, stats, _ = AnnotationService().fetch_transcript_to_gene(
        dataset=dataset,
        host=host,
        versioned=versioned,
        strip_versions=strip_versions,
        use_cache=use_cache,
    )
    logger.debug(f"fetch_annotations: {stats}")
    return mapping


def load_annotations(
    path: Union[str, Path],
    columns: Optional[Dict[str, str]] = None,
    strip_versions: bool = False,
) -> pd.DataFrame:
    """Transcript-to-gene mapping from a local TSV/CSV file."""
    mapping, stats, _ = AnnotationService().load_transcript_to_gene(
        path, columns=columns, strip_versions=strip_versions
    )
    logger.debug(f"load_annotations: {stats}")
    return mapping


def prepare(
    sample_to_covariates: pd.DataFrame,
    target_mapping: Optional[pd.DataFrame] = None,
    aggregation_column: Optional[str] = None,
    extra_bootstrap_summary: bool = False,
    **kwargs,
) -> AnalysisContext:
    """Build the analysis context; gene mode when both mapping and column are set."""
    context, stats, _ = QuantificationService().prepare(
        sample_to_covariates,
        target_mapping=target_mapping,
        aggregation_column=aggregation_column,
        extra_bootstrap_summary=extra_bootstrap_summary,
        **kwargs,
    )
    logger.debug(f"prepare: {stats}")
    return context


def fit(
    context: AnalysisContext,
    formula: str,
    fit_name: str = "full",
    reference_levels: Optional[Dict[str, str]] = None,
) -> AnalysisContext:
    context, stats, _ = ModelService().fit(
        context, formula, fit_name=fit_name, reference_levels=reference_levels
    )
    logger.debug(f"fit: {stats}")
    return context


def lrt(
    context: AnalysisContext, null_model: str = "reduced", alt_model: str = "full"
) -> AnalysisContext:
    context, stats, _ = ModelService().lrt(context, null_model, alt_model)
    logger.debug(f"lrt: {stats}")
    return context


def wt(
    context: AnalysisContext, which_beta: str, which_model: str = "full"
) -> AnalysisContext:
    context, stats, _ = ModelService().wald_test(context, which_beta, which_model)
    logger.debug(f"wt: {stats}")
    return context


def results(
    context: AnalysisContext,
    test: str,
    test_type: str = "lrt",
    which_model: Optional[str] = None,
    pval_aggregate: Optional[bool] = None,
) -> pd.DataFrame:
    """Results table of a stored test, aggregated to genes in gene mode by default."""
    table, stats, _ = ResultsService().results(
        context,
        test,
        test_type=test_type,
        which_model=which_model,
        pval_aggregate=pval_aggregate,
    )
    logger.debug(f"results: {stats}")
    return table


def filter_significant(
    table: pd.DataFrame, threshold: float = 0.05, column: str = "qval"
) -> pd.DataFrame:
    return _filter_significant(table, threshold=threshold, column=column)


def write_results(
    context: AnalysisContext,
    test: str,
    output: Union[str, Path],
    test_type: str = "lrt",
    threshold: float = 0.05,
    which_model: Optional[str] = None,
    pval_aggregate: Optional[bool] = None,
) -> Tuple[pd.DataFrame, Dict[str, Any]]:
    """
    Write the significant rows of a stored test and the run's provenance.

    ``output`` receives ``results.tsv`` (rows with ``qval <= threshold``) and
    ``provenance.json`` (every step of ``context`` plus the results step).

    Returns:
        Tuple[pd.DataFrame, Dict[str, Any]]: Significant rows; statistics with
            the row counts and the written paths
    """
    table, stats, results_ir = ResultsService().results(
        context,
        test,
        test_type=test_type,
        which_model=which_model,
        pval_aggregate=pval_aggregate,
    )
    significant = _filter_significant(table, threshold=threshold)

    output = Path(output)
    output.mkdir(parents=True, exist_ok=True)
    results_path = output / "results.tsv"
    significant.to_csv(results_path, sep="\t", index=False)
    provenance_path = export_provenance(
        context.provenance + [results_ir], output / "provenance.json"
    )

    stats = dict(
        stats,
        n_rows=len(table),
        n_significant=len(significant),
        threshold=threshold,
        results_path=results_path,
        provenance_path=provenance_path,
    )
    logger.info(
        f"Wrote {stats['n_significant']} of {stats['n_rows']} rows to {results_path}"
    )
    return significant, stats


def models(context: AnalysisContext) -> Dict[str, str]:
    """Fitted model names and their formulas."""
    return ModelService().list_models(context)


def tests(context: AnalysisContext) -> Dict[str, List[str]]:
    """Test names by test type."""
    return ModelService().list_tests(context)


# not a pytest test
tests.__test__ = False


def live(context: AnalysisContext, port: Optional[int] = None) -> subprocess.Popen:
    """Open the Streamlit viewer for ``context``; returns the server process."""
    process, stats, _ = LiveViewerService().launch(context, port=port)
    logger.info(f"Live viewer running at {stats['url']} (pid {stats['pid']})")
    return process
