#!/usr/bin/env python3
"""
Command line interface for isoflow.

``isoflow run`` executes the whole pipeline: load the sample sheet, obtain
the transcript-to-gene mapping, read the kallisto quantifications, fit the
reduced and full models, run the likelihood-ratio test and write the
significant results.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd
import typer
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from isoflow import api
from isoflow.config.settings import get_settings
from isoflow.core import IsoflowCoreError
from isoflow.utils.logger import get_logger, setup_rich_logging
from isoflow.version import __version__

logger = get_logger(__name__)

console = Console()

app = typer.Typer(
    name="isoflow",
    help="Multi-covariate differential expression for kallisto quantifications",
    add_completion=False,
    rich_markup_mode="rich",
)


def _parse_renames(renames: List[str]) -> Dict[str, str]:
    parsed = {}
    for item in renames:
        old, sep, new = item.partition("=")
        if not sep or not old.strip() or not new.strip():
            raise typer.BadParameter(f"Expected OLD=NEW, got '{item}'", param_hint="--rename")
        parsed[old.strip()] = new.strip()
    return parsed


def _summary_table(table: pd.DataFrame, max_rows: int) -> Table:
    summary = Table(box=box.SIMPLE_HEAVY, show_lines=False)
    columns = [
        c
        for c in table.columns
        if c
        in (
            "target_id",
            "ens_gene",
            "ext_gene",
            "num_aggregated_transcripts",
            "test_stat",
            "pval",
            "qval",
        )
    ]
    for column in columns:
        is_label = column in ("target_id", "ens_gene", "ext_gene")
        summary.add_column(column, justify="left" if is_label else "right")
    for _, row in table.head(max_rows).iterrows():
        cells = []
        for column in columns:
            value = row[column]
            if isinstance(value, float):
                cells.append(f"{value:.3g}")
            else:
                cells.append("" if pd.isna(value) else str(value))
        summary.add_row(*cells)
    return summary


@app.command()
def run(
    metadata: Path = typer.Option(
        ..., "--metadata", "-m", help="Tab-separated sample sheet with a header row"
    ),
    base: Path = typer.Option(
        ..., "--base", "-b", help="Directory holding <subdir>/<sample>/<abundance file>"
    ),
    id_column: str = typer.Option(
        "sample", "--id-column", help="Sample sheet column with the run identifier"
    ),
    covariates: List[str] = typer.Option(
        ..., "--covariate", "-c", help="Covariate column to keep (repeatable)"
    ),
    renames: List[str] = typer.Option(
        [], "--rename", help="Rename a sample sheet column, OLD=NEW (repeatable)"
    ),
    reduced: str = typer.Option(..., "--reduced", help="Reduced model formula"),
    full: str = typer.Option(..., "--full", help="Full model formula"),
    dataset: Optional[str] = typer.Option(
        None, "--dataset", help="BioMart dataset (default from ISOFLOW_BIOMART_DATASET)"
    ),
    host: Optional[str] = typer.Option(
        None, "--host", help="BioMart host, e.g. dec2015.archive.ensembl.org"
    ),
    mapping_file: Optional[Path] = typer.Option(
        None, "--mapping-file", help="Local transcript-to-gene table instead of BioMart"
    ),
    annotations: bool = typer.Option(
        True, "--annotations/--no-annotations", help="Annotate transcripts with genes"
    ),
    strip_versions: bool = typer.Option(
        False, "--strip-versions", help="Drop .N version suffixes from mapping ids"
    ),
    aggregate: bool = typer.Option(
        True, "--aggregate/--no-aggregate", help="Aggregate p-values to genes"
    ),
    aggregation_column: str = typer.Option(
        "ens_gene", "--aggregation-column", help="Mapping column to aggregate by"
    ),
    qval: float = typer.Option(0.05, "--qval", help="Significance threshold on qval"),
    output: Path = typer.Option(
        Path("isoflow_results"), "--output", "-o", help="Output directory"
    ),
    max_rows: int = typer.Option(20, "--max-rows", help="Rows shown in the summary"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Run the full differential expression pipeline."""
    if verbose:
        level = logging.DEBUG
    else:
        level = getattr(logging, get_settings().LOG_LEVEL, logging.INFO)
    setup_rich_logging(level)

    rename = _parse_renames(renames)
    if aggregate and not annotations:
        raise typer.BadParameter(
            "gene aggregation needs annotations", param_hint="--aggregate"
        )

    try:
        sample_sheet = api.load_metadata(
            metadata,
            columns=[id_column] + list(covariates),
            id_column=id_column,
            base=base,
            rename=rename,
            check_paths=True,
        )

        t2g = None
        if annotations:
            if mapping_file is not None:
                t2g = api.load_annotations(mapping_file, strip_versions=strip_versions)
            else:
                t2g = api.fetch_annotations(
                    dataset=dataset, host=host, strip_versions=strip_versions
                )

        ctx = api.prepare(
            sample_sheet,
            target_mapping=t2g,
            aggregation_column=aggregation_column if aggregate else None,
        )
        ctx = api.fit(ctx, reduced, "reduced")
        ctx = api.fit(ctx, full, "full")
        ctx = api.lrt(ctx, "reduced", "full")

        significant, stats = api.write_results(
            ctx,
            "reduced:full",
            output,
            test_type="lrt",
            threshold=qval,
            pval_aggregate=aggregate,
        )
    except IsoflowCoreError as e:
        console.print(f"[red]Error:[/red] {escape(e.message)}")
        logger.debug(f"Details: {e.details}")
        raise typer.Exit(1)

    unit = "genes" if aggregate else "transcripts"
    console.print(
        Panel.fit(
            f"[bold]{len(significant)}[/bold] of {stats['n_rows']} {unit} with qval <= {qval}\n"
            f"reduced: {escape(reduced)}\nfull: {escape(full)}",
            title="isoflow lrt reduced:full",
        )
    )
    if not significant.empty:
        console.print(_summary_table(significant, max_rows))
    console.print(f"Results: {stats['results_path']}")
    console.print(f"Provenance: {stats['provenance_path']}")


@app.command()
def version():
    """Show the isoflow version."""
    console.print(f"isoflow {__version__}")


if __name__ == "__main__":
    app()
