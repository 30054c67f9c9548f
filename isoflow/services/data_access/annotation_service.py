"""
Transcript annotation service backed by Ensembl BioMart.

This stateless service retrieves the transcript -> gene -> gene name mapping
needed to aggregate transcript-level results into gene-level results. The
mapping is projected to three columns (``target_id``, ``ens_gene``,
``ext_gene``) and optionally cached on disk, following the three-tuple
pattern (table, stats, IR).
"""

import io
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union
from xml.sax.saxutils import quoteattr

import pandas as pd
import requests

from isoflow.config.settings import get_settings
from isoflow.core import AnnotationError
from isoflow.core.analysis_ir import AnalysisStep
from isoflow.utils.logger import get_logger

logger = get_logger(__name__)

MAPPING_COLUMNS = ["target_id", "ens_gene", "ext_gene"]

# BioMart attribute -> mapping column
BIOMART_ATTRIBUTES = {
    "ensembl_transcript_id": "target_id",
    "ensembl_gene_id": "ens_gene",
    "external_gene_name": "ext_gene",
}
VERSIONED_TRANSCRIPT_ATTRIBUTE = "ensembl_transcript_id_version"

_VERSION_SUFFIX = re.compile(r"\.\d+$")


def strip_version(identifier: str) -> str:
    """Drop a trailing ``.N`` version from an Ensembl identifier."""
    return _VERSION_SUFFIX.sub("", identifier)


class AnnotationService:
    """
    Stateless service for transcript-to-gene annotation tables.

    Network errors are not retried; they surface as :class:`AnnotationError`
    chained from the underlying ``requests`` exception.
    """

    def __init__(self, session: Optional[requests.Session] = None, config=None):
        """
        Initialize the annotation service.

        Args:
            session: Optional ``requests.Session`` (useful for proxies/tests)
            config: Optional configuration dict (unused)
        """
        logger.debug("Initializing stateless AnnotationService")
        self.session = session or requests.Session()
        self.config = config or {}

    def build_query(self, dataset: str, versioned: bool = False) -> str:
        """
        Build the BioMart XML query for the mapping attributes.

        Args:
            dataset: BioMart dataset (e.g. "mmusculus_gene_ensembl")
            versioned: Request versioned transcript ids (``ENSMUST...N.2``)
        """
        attributes = list(BIOMART_ATTRIBUTES)
        if versioned:
            attributes[0] = VERSIONED_TRANSCRIPT_ATTRIBUTE
        attribute_xml = "".join(
            f"<Attribute name={quoteattr(name)} />" for name in attributes
        )
        return (
            '<?xml version="1.0" encoding="UTF-8"?>'
            "<!DOCTYPE Query>"
            '<Query virtualSchemaName="default" formatter="TSV" header="0" '
            'uniqueRows="1" datasetConfigVersion="0.6">'
            f'<Dataset name={quoteattr(dataset)} interface="default">'
            f"{attribute_xml}"
            "</Dataset>"
            "</Query>"
        )

    def martservice_url(self, host: str) -> str:
        host = host.rstrip("/")
        if not re.match(r"^https?://", host):
            host = f"https://{host}"
        return f"{host}/biomart/martservice"

    def fetch_transcript_to_gene(
        self,
        dataset: Optional[str] = None,
        host: Optional[str] = None,
        versioned: bool = False,
        strip_versions: bool = False,
        cache_dir: Optional[Union[str, Path]] = None,
        use_cache: bool = True,
        timeout: Optional[int] = None,
    ) -> Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]:
        """
        Retrieve the transcript-to-gene mapping from BioMart.

        Args:
            dataset: BioMart dataset name; defaults to settings
            host: BioMart host (archive hosts pin an Ensembl release,
                e.g. "dec2015.archive.ensembl.org"); defaults to settings
            versioned: Request versioned transcript ids
            strip_versions: Remove version suffixes from transcript ids
            cache_dir: Directory for the cached TSV; defaults to settings
            use_cache: Read/write the cache
            timeout: Request timeout in seconds

        Returns:
            Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]: Mapping with
                ``target_id``, ``ens_gene`` and ``ext_gene``; fetch statistics;
                provenance step

        Raises:
            AnnotationError: On network, HTTP or BioMart query errors
        """
        settings = get_settings()
        dataset = dataset or settings.BIOMART_DATASET
        host = host or settings.BIOMART_HOST
        timeout = timeout or settings.BIOMART_TIMEOUT
        cache_dir = Path(cache_dir) if cache_dir else settings.cache_dir

        cache_file = cache_dir / self._cache_name(dataset, host, versioned)
        from_cache = use_cache and cache_file.exists()

        if from_cache:
            logger.info(f"Using cached annotation table: {cache_file}")
            mapping = pd.read_csv(cache_file, sep="\t", dtype=str, keep_default_na=False)
        else:
            text = self._query(dataset, host, versioned, timeout)
            mapping = self._parse_response(text)
            if use_cache:
                self._write_cache(mapping, cache_file)
                logger.debug(f"Cached annotation table at {cache_file}")

        mapping = self._project(mapping, strip_versions)

        stats = {
            "dataset": dataset,
            "host": host,
            "n_transcripts": int(mapping["target_id"].nunique()),
            "n_genes": int(mapping["ens_gene"].nunique()),
            "from_cache": from_cache,
            "versioned": versioned,
            "strip_versions": strip_versions,
        }
        logger.info(
            f"Annotation table: {stats['n_transcripts']} transcripts, "
            f"{stats['n_genes']} genes ({dataset} @ {host})"
        )

        ir = AnalysisStep(
            operation="isoflow.fetch_annotations",
            tool_name="fetch_transcript_to_gene",
            description=f"Fetch transcript-to-gene mapping for {dataset}",
            library="requests",
            code_template=(
                "t2g = fetch_annotations(dataset={{ dataset | tojson }}, "
                "host={{ host | tojson }}, versioned={{ versioned }}, "
                "strip_versions={{ strip_versions }})"
            ),
            imports=["from isoflow.api import fetch_annotations"],
            parameters={
                "dataset": dataset,
                "host": host,
                "versioned": versioned,
                "strip_versions": strip_versions,
            },
            input_entities=[self.martservice_url(host)],
            output_entities=["t2g"],
        )
        return mapping, stats, ir

    def load_transcript_to_gene(
        self,
        path: Union[str, Path],
        columns: Optional[Dict[str, str]] = None,
        strip_versions: bool = False,
    ) -> Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]:
        """
        Load a mapping from a local delimited file.

        Args:
            path: TSV/CSV file (delimiter inferred from the extension)
            columns: Rename from file columns to ``target_id``/``ens_gene``/
                ``ext_gene``; identity when the file already uses them
            strip_versions: Remove version suffixes from transcript ids

        Raises:
            AnnotationError: If the file is missing or lacks columns
        """
        path = Path(path).expanduser()
        if not path.exists():
            raise AnnotationError(
                f"Annotation file not found: {path}", details={"path": str(path)}
            )
        sep = "," if path.suffix.lower() == ".csv" else "\t"
        table = pd.read_csv(path, sep=sep, dtype=str, keep_default_na=False)
        if columns:
            table = table.rename(columns=columns)

        mapping = self._project(table, strip_versions)
        stats = {
            "source": str(path),
            "n_transcripts": int(mapping["target_id"].nunique()),
            "n_genes": int(mapping["ens_gene"].nunique()),
            "strip_versions": strip_versions,
        }
        ir = AnalysisStep(
            operation="isoflow.load_annotations",
            tool_name="load_transcript_to_gene",
            description=f"Load transcript-to-gene mapping from {path.name}",
            library="pandas",
            code_template=(
                "t2g = load_annotations({{ path | tojson }}, "
                "columns={{ columns | tojson }}, strip_versions={{ strip_versions }})"
            ),
            imports=["from isoflow.api import load_annotations"],
            parameters={
                "path": str(path),
                "columns": dict(columns or {}),
                "strip_versions": strip_versions,
            },
            input_entities=[str(path)],
            output_entities=["t2g"],
        )
        return mapping, stats, ir

    def _query(self, dataset: str, host: str, versioned: bool, timeout: int) -> str:
        url = self.martservice_url(host)
        query = self.build_query(dataset, versioned)
        logger.info(f"Querying BioMart {url} for dataset {dataset}")
        try:
            response = self.session.get(url, params={"query": query}, timeout=timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise AnnotationError(
                f"BioMart request to {url} failed: {e}",
                details={"url": url, "dataset": dataset},
            ) from e

        text = response.text
        if "Query ERROR" in text or text.lstrip().startswith("ERROR"):
            raise AnnotationError(
                f"BioMart rejected the query: {text.strip()[:300]}",
                details={"url": url, "dataset": dataset},
            )
        if not text.strip():
            raise AnnotationError(
                f"BioMart returned no rows for dataset {dataset}",
                details={"url": url, "dataset": dataset},
            )
        return text

    def _parse_response(self, text: str) -> pd.DataFrame:
        table = pd.read_csv(
            io.StringIO(text),
            sep="\t",
            header=None,
            dtype=str,
            keep_default_na=False,
        )
        if table.shape[1] != len(MAPPING_COLUMNS):
            raise AnnotationError(
                f"Unexpected BioMart response: {table.shape[1]} columns, "
                f"expected {len(MAPPING_COLUMNS)}",
                details={"n_columns": table.shape[1]},
            )
        table.columns = MAPPING_COLUMNS
        return table

    def _project(self, table: pd.DataFrame, strip_versions: bool) -> pd.DataFrame:
        missing = [c for c in MAPPING_COLUMNS if c not in table.columns]
        if missing:
            raise AnnotationError(
                f"Annotation table lacks columns {missing}. "
                f"Available columns: {list(table.columns)}",
                details={"missing_columns": missing},
            )
        mapping = table.loc[:, MAPPING_COLUMNS].copy()
        mapping = mapping[mapping["target_id"].astype(str).str.len() > 0]
        if strip_versions:
            mapping["target_id"] = mapping["target_id"].map(strip_version)
            mapping["ens_gene"] = mapping["ens_gene"].map(strip_version)
        return mapping.drop_duplicates().reset_index(drop=True)

    @staticmethod
    def _cache_name(dataset: str, host: str, versioned: bool) -> str:
        safe_host = re.sub(r"[^A-Za-z0-9.]+", "_", host)
        suffix = "_versioned" if versioned else ""
        return f"t2g__{dataset}__{safe_host}{suffix}.tsv"

    @staticmethod
    def _write_cache(mapping: pd.DataFrame, cache_file: Path) -> None:
        """Write the cached table to a temporary sibling, then replace it into place."""
        cache_file.parent.mkdir(parents=True, exist_ok=True)
        temp_fd, temp_path = tempfile.mkstemp(
            prefix=f"{cache_file.name}.", suffix=".tmp", dir=cache_file.parent
        )
        temp_file = Path(temp_path)

        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8", newline="") as handle:
                mapping.to_csv(handle, sep="\t", index=False)
            os.replace(temp_file, cache_file)
        except Exception:
            if temp_file.exists():
                temp_file.unlink()
            raise
