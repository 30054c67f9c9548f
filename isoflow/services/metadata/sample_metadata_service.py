"""
Sample metadata service for experimental designs.

This service reads the tab-separated sample sheet describing each sequencing
run and its experimental factors, keeps the columns needed for the design,
renames them to the names used downstream and derives the path to every
sample's kallisto output.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import pandas as pd

from isoflow.config.settings import get_settings
from isoflow.core import MetadataError
from isoflow.core.analysis_ir import AnalysisStep
from isoflow.utils.logger import get_logger

logger = get_logger(__name__)

SAMPLE_COLUMN = "sample"
PATH_COLUMN = "path"


@dataclass(frozen=True)
class PathTemplate:
    """
    Layout of per-sample quantification outputs.

    Renders ``<base>/<quant_subdir>/<sample>/<abundance_file>``. Either of
    ``quant_subdir`` or ``abundance_file`` may be empty to drop that
    component (e.g. to point at the kallisto output directory itself).
    """

    base: str
    quant_subdir: str = "kallisto"
    abundance_file: str = "abundance.h5"

    @classmethod
    def from_settings(cls, base: Union[str, Path]) -> "PathTemplate":
        settings = get_settings()
        return cls(
            base=str(base),
            quant_subdir=settings.QUANT_SUBDIR,
            abundance_file=settings.ABUNDANCE_FILE,
        )

    def render(self, sample_id: str) -> str:
        parts = [os.path.expanduser(self.base)]
        if self.quant_subdir:
            parts.append(self.quant_subdir)
        parts.append(str(sample_id))
        if self.abundance_file:
            parts.append(self.abundance_file)
        return os.path.join(*parts)


class SampleMetadataService:
    """
    Stateless service for loading and shaping sample metadata.

    Follows the three-tuple convention: operations return
    ``(result, stats_dict, AnalysisStep)``.
    """

    def __init__(self, config=None, **kwargs):
        """
        Initialize the sample metadata service.

        Args:
            config: Optional configuration dict (unused)
            **kwargs: Additional arguments (ignored)
        """
        logger.debug("Initializing stateless SampleMetadataService")
        self.config = config or {}

    def load_sample_metadata(
        self,
        path: Union[str, Path],
        columns: Sequence[str],
        id_column: str,
        path_template: PathTemplate,
        rename: Optional[Mapping[str, str]] = None,
        check_paths: bool = False,
    ) -> Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]:
        """
        Read a tab-separated sample sheet and derive quantification paths.

        Args:
            path: Metadata TSV with a header row
            columns: Columns to keep, including ``id_column``
            id_column: Column holding the run/sample identifier; it is
                renamed to ``sample``
            path_template: Layout used to derive the ``path`` column
            rename: Optional additional renames (e.g. covariate names)
            check_paths: Fail when a derived path does not exist

        Returns:
            Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]: Metadata table
                with ``sample``, the covariates and ``path``; load statistics;
                provenance step

        Raises:
            MetadataError: If the file is missing or malformed, columns are
                absent, identifiers are duplicated or (with ``check_paths``)
                quantifications are missing
        """
        path = Path(path).expanduser()
        logger.info(f"Loading sample metadata from {path}")

        if not path.exists():
            raise MetadataError(
                f"Metadata file not found: {path}", details={"path": str(path)}
            )

        try:
            raw = pd.read_csv(path, sep="\t", header=0)
        except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
            raise MetadataError(
                f"Could not parse metadata file {path}: {e}",
                details={"path": str(path)},
            ) from e

        if raw.empty:
            raise MetadataError(
                f"Metadata file {path} contains no samples", details={"path": str(path)}
            )

        columns = list(columns)
        if id_column not in columns:
            columns = [id_column] + columns

        selected = self.select_columns(raw, columns)

        renames = {id_column: SAMPLE_COLUMN}
        renames.update(rename or {})
        renamed = self.rename_columns(selected, renames)

        self._check_unique_samples(renamed)
        self._check_complete_rows(renamed, path)
        renamed[SAMPLE_COLUMN] = renamed[SAMPLE_COLUMN].astype(str)

        metadata = self.derive_paths(renamed, path_template)

        missing_paths = [p for p in metadata[PATH_COLUMN] if not os.path.exists(p)]
        if missing_paths:
            if check_paths:
                raise MetadataError(
                    f"{len(missing_paths)} quantification path(s) do not exist, "
                    f"first: {missing_paths[0]}",
                    details={"missing_paths": missing_paths},
                )
            logger.warning(
                f"{len(missing_paths)} of {len(metadata)} derived paths do not exist yet"
            )

        stats = {
            "n_samples": len(metadata),
            "columns": list(metadata.columns),
            "covariates": [
                c for c in metadata.columns if c not in (SAMPLE_COLUMN, PATH_COLUMN)
            ],
            "n_missing_paths": len(missing_paths),
            "source": str(path),
        }

        logger.info(
            f"Loaded metadata for {stats['n_samples']} samples "
            f"with covariates {stats['covariates']}"
        )

        ir = AnalysisStep(
            operation="isoflow.load_metadata",
            tool_name="load_sample_metadata",
            description=f"Load sample metadata for {len(metadata)} samples",
            library="pandas",
            code_template=(
                "metadata = load_metadata(\n"
                "    {{ path | tojson }},\n"
                "    columns={{ columns | tojson }},\n"
                "    id_column={{ id_column | tojson }},\n"
                "    rename={{ rename | tojson }},\n"
                "    path_template=PathTemplate({{ base | tojson }}, "
                "{{ quant_subdir | tojson }}, {{ abundance_file | tojson }}),\n"
                ")"
            ),
            imports=[
                "from isoflow.api import load_metadata",
                "from isoflow.services.metadata.sample_metadata_service import PathTemplate",
            ],
            parameters={
                "path": str(path),
                "columns": columns,
                "id_column": id_column,
                "rename": dict(rename or {}),
                "base": path_template.base,
                "quant_subdir": path_template.quant_subdir,
                "abundance_file": path_template.abundance_file,
            },
            input_entities=[str(path)],
            output_entities=["metadata"],
        )

        return metadata, stats, ir

    def select_columns(self, table: pd.DataFrame, columns: List[str]) -> pd.DataFrame:
        """
        Keep ``columns`` in table order.

        Raises:
            MetadataError: If any requested column is absent
        """
        missing = [c for c in columns if c not in table.columns]
        if missing:
            raise MetadataError(
                f"Columns not found in metadata: {missing}. "
                f"Available columns: {list(table.columns)}",
                details={
                    "missing_columns": missing,
                    "available_columns": list(table.columns),
                },
            )
        wanted = set(columns)
        return table.loc[:, [c for c in table.columns if c in wanted]].copy()

    def rename_columns(
        self, table: pd.DataFrame, renames: Mapping[str, str]
    ) -> pd.DataFrame:
        """
        Rename columns, refusing renames that would collide.

        Raises:
            MetadataError: If a source column is absent or targets collide
        """
        unknown = [old for old in renames if old not in table.columns]
        if unknown:
            raise MetadataError(
                f"Cannot rename missing columns: {unknown}",
                details={"missing_columns": unknown},
            )
        new_names = [renames.get(c, c) for c in table.columns]
        if len(set(new_names)) != len(new_names):
            raise MetadataError(
                f"Renaming would produce duplicate columns: {new_names}",
                details={"columns": new_names},
            )
        return table.rename(columns=dict(renames))

    def derive_paths(
        self, metadata: pd.DataFrame, path_template: PathTemplate
    ) -> pd.DataFrame:
        """Add (or overwrite) the ``path`` column from ``path_template``."""
        if SAMPLE_COLUMN not in metadata.columns:
            raise MetadataError(
                f"Metadata has no '{SAMPLE_COLUMN}' column",
                details={"available_columns": list(metadata.columns)},
            )
        result = metadata.copy()
        result[PATH_COLUMN] = [path_template.render(s) for s in result[SAMPLE_COLUMN]]
        return result

    def _check_unique_samples(self, metadata: pd.DataFrame) -> None:
        ids = metadata[SAMPLE_COLUMN]
        if ids.isna().any():
            raise MetadataError(
                f"{int(ids.isna().sum())} row(s) have no sample identifier",
                details={"n_missing": int(ids.isna().sum())},
            )
        duplicated = sorted(ids[ids.duplicated()].unique())
        if duplicated:
            raise MetadataError(
                f"Duplicate sample identifiers: {duplicated}",
                details={"duplicates": duplicated},
            )

    def _check_complete_rows(self, metadata: pd.DataFrame, path: Path) -> None:
        """Reject rows with an empty value in any selected column."""
        missing = metadata.isna()
        if not missing.any().any():
            return
        incomplete = {
            str(metadata.at[row, SAMPLE_COLUMN]): [
                column for column in metadata.columns if missing.at[row, column]
            ]
            for row in metadata.index[missing.any(axis=1)]
        }
        raise MetadataError(
            f"{len(incomplete)} row(s) of {path} have empty or missing fields: "
            + "; ".join(
                f"{sample} ({', '.join(columns)})"
                for sample, columns in incomplete.items()
            ),
            details={"incomplete_rows": incomplete},
        )
