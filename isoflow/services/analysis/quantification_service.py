"""
Kallisto quantification service.

This service builds the :class:`~isoflow.core.context.AnalysisContext` from a
sample metadata table whose ``path`` column points at kallisto outputs. It
reads estimated counts (and bootstraps when the HDF5 output is available),
attaches the transcript-to-gene mapping, filters lowly expressed transcripts,
computes median-of-ratios size factors, log-transforms the normalized counts
and summarizes the bootstrap (technical) variance.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import anndata
import h5py
import numpy as np
import pandas as pd

from isoflow.config.settings import get_settings
from isoflow.core import QuantificationError
from isoflow.core.analysis_ir import AnalysisStep
from isoflow.core.context import AnalysisContext
from isoflow.services.metadata.sample_metadata_service import (
    PATH_COLUMN,
    SAMPLE_COLUMN,
)
from isoflow.utils.logger import get_logger

logger = get_logger(__name__)

KALLISTO_H5 = "abundance.h5"
KALLISTO_TSV = "abundance.tsv"
TSV_COLUMNS = ["target_id", "length", "eff_length", "est_counts", "tpm"]
TRANSFORM_OFFSET = 0.5


@dataclass
class KallistoSample:
    """Per-sample kallisto output."""

    sample: str
    target_ids: np.ndarray
    length: np.ndarray
    eff_length: np.ndarray
    est_counts: np.ndarray
    tpm: np.ndarray
    bootstraps: Optional[np.ndarray]
    source: str

    @property
    def n_bootstraps(self) -> int:
        return 0 if self.bootstraps is None else self.bootstraps.shape[0]


def basic_filter(row: np.ndarray, min_reads: float = 5, min_prop: float = 0.47) -> bool:
    """Keep a transcript when at least ``min_prop`` of samples have ``min_reads``."""
    return bool(np.mean(row >= min_reads) >= min_prop)


def transform(x: np.ndarray) -> np.ndarray:
    """Variance-stabilizing transform applied to normalized counts."""
    return np.log(x + TRANSFORM_OFFSET)


def tpm_from_counts(est_counts: np.ndarray, eff_length: np.ndarray) -> np.ndarray:
    """Transcripts per million from estimated counts and effective lengths."""
    with np.errstate(divide="ignore", invalid="ignore"):
        rate = np.where(eff_length > 0, est_counts / eff_length, 0.0)
    total = rate.sum()
    if total <= 0:
        return np.zeros_like(rate)
    return rate / total * 1e6


def median_of_ratios(counts: np.ndarray) -> np.ndarray:
    """
    Size factors for a transcripts x samples count matrix.

    Only transcripts with a nonzero (rounded) count in every sample enter the
    geometric means; factors are rescaled to a geometric mean of one.

    Raises:
        QuantificationError: If no transcript is expressed in every sample
    """
    nonzero = ~np.any(np.round(counts) == 0, axis=1)
    if not nonzero.any():
        raise QuantificationError(
            "Cannot compute size factors: no transcript is expressed in every sample"
        )
    log_counts = np.log(counts[nonzero])
    log_geo_means = log_counts.mean(axis=1, keepdims=True)
    size_factors = np.exp(np.median(log_counts - log_geo_means, axis=0))
    scaling = np.exp(-np.mean(np.log(size_factors)))
    return size_factors * scaling


class QuantificationService:
    """
    Stateless service for loading kallisto outputs into an analysis context.

    Follows the three-tuple convention: ``prepare`` returns
    ``(AnalysisContext, stats_dict, AnalysisStep)``.
    """

    def __init__(self, config=None, **kwargs):
        """
        Initialize the quantification service.

        Args:
            config: Optional configuration dict (unused)
            **kwargs: Additional arguments (ignored)
        """
        logger.debug("Initializing stateless QuantificationService")
        self.config = config or {}

    def prepare(
        self,
        sample_to_covariates: pd.DataFrame,
        target_mapping: Optional[pd.DataFrame] = None,
        aggregation_column: Optional[str] = None,
        extra_bootstrap_summary: bool = False,
        filter_fun: Optional[Callable[[np.ndarray], bool]] = None,
        min_reads: Optional[float] = None,
        min_prop: Optional[float] = None,
        read_bootstraps: bool = True,
    ) -> Tuple[AnalysisContext, Dict[str, Any], AnalysisStep]:
        """
        Load every sample's quantification and build the analysis context.

        Args:
            sample_to_covariates: Metadata with ``sample`` and ``path`` columns
                plus the covariates used in model formulas
            target_mapping: Optional table with ``target_id`` and annotation
                columns (``ens_gene``, ``ext_gene``)
            aggregation_column: Mapping column to aggregate p-values by; with
                ``target_mapping`` this switches the context into gene mode
            extra_bootstrap_summary: Also compute per-sample bootstrap quantiles
            filter_fun: Row filter over est_counts (defaults to
                :func:`basic_filter` with ``min_reads``/``min_prop``)
            min_reads: Threshold for the default filter
            min_prop: Sample proportion for the default filter
            read_bootstraps: Read bootstraps from HDF5 outputs

        Returns:
            Tuple[AnalysisContext, Dict[str, Any], AnalysisStep]

        Raises:
            QuantificationError: On missing/malformed quantifications,
                inconsistent samples or an invalid mapping configuration
        """
        settings = get_settings()
        min_reads = settings.FILTER_MIN_READS if min_reads is None else min_reads
        min_prop = settings.FILTER_MIN_PROP if min_prop is None else min_prop
        if filter_fun is None:

            def filter_fun(row: np.ndarray) -> bool:
                return basic_filter(row, min_reads=min_reads, min_prop=min_prop)

        metadata = self._validate_sample_table(sample_to_covariates)
        self._validate_mapping_config(target_mapping, aggregation_column)

        logger.info(f"Reading {len(metadata)} kallisto quantifications")
        samples = [
            self.read_kallisto(path, sample, read_bootstraps=read_bootstraps)
            for sample, path in zip(metadata.index, metadata[PATH_COLUMN])
        ]
        target_ids = self._check_consistent_targets(samples)

        est_counts = np.vstack([s.est_counts for s in samples])
        var = pd.DataFrame(
            {"length": samples[0].length}, index=pd.Index(target_ids, name="target_id")
        )

        if target_mapping is not None:
            var = self._attach_mapping(var, target_mapping)

        passed = np.array([filter_fun(row) for row in est_counts.T], dtype=bool)
        if not passed.any():
            raise QuantificationError(
                "No transcripts passed the expression filter",
                details={"n_targets": len(target_ids)},
            )
        var["passed_filter"] = passed
        logger.info(f"{int(passed.sum())} of {len(passed)} transcripts passed the filter")

        size_factors = median_of_ratios(est_counts[:, passed].T)
        obs_norm = est_counts / size_factors[:, None]

        obs = metadata.copy()
        obs.index = obs.index.astype(str)
        obs[PATH_COLUMN] = obs[PATH_COLUMN].astype(str)
        adata = anndata.AnnData(
            X=est_counts.astype(np.float64),
            obs=obs,
            var=var,
        )
        adata.layers["tpm"] = np.vstack([s.tpm for s in samples])
        adata.layers["eff_len"] = np.vstack([s.eff_length for s in samples])
        adata.layers["obs_norm"] = obs_norm
        adata.layers["obs_transformed"] = transform(obs_norm)

        bootstraps = {
            s.sample: s.bootstraps for s in samples if s.bootstraps is not None
        }
        filtered_ids = adata.var_names[passed]
        sf = pd.Series(size_factors, index=adata.obs_names, name="size_factor")
        technical_variance = self.technical_variance(
            bootstraps, sf, passed, filtered_ids, n_samples=len(samples)
        )

        bootstrap_summary = None
        if extra_bootstrap_summary:
            bootstrap_summary = self.summarize_bootstraps(
                bootstraps, sf, passed, filtered_ids
            )

        mapping = None
        if target_mapping is not None:
            mapping = target_mapping.drop_duplicates(subset="target_id").reset_index(
                drop=True
            )

        stats = {
            "n_samples": len(samples),
            "n_targets": len(target_ids),
            "n_filtered": int(passed.sum()),
            "n_bootstraps": {s.sample: s.n_bootstraps for s in samples},
            "gene_mode": mapping is not None and aggregation_column is not None,
            "aggregation_column": aggregation_column,
            "size_factors": {k: float(v) for k, v in sf.items()},
            "extra_bootstrap_summary": bootstrap_summary is not None,
        }

        ir = AnalysisStep(
            operation="isoflow.prepare",
            tool_name="prepare",
            description=(
                f"Load {len(samples)} kallisto quantifications "
                f"({stats['n_filtered']} transcripts pass the filter)"
            ),
            library="h5py",
            code_template=(
                "ctx = prepare(metadata, target_mapping=t2g if {{ has_mapping }} else None, "
                "aggregation_column={{ aggregation_column | tojson }}, "
                "extra_bootstrap_summary={{ extra_bootstrap_summary }})"
            ),
            imports=["from isoflow.api import prepare"],
            parameters={
                "has_mapping": target_mapping is not None,
                "aggregation_column": aggregation_column,
                "extra_bootstrap_summary": extra_bootstrap_summary,
                "min_reads": min_reads,
                "min_prop": min_prop,
            },
            input_entities=["metadata"] + (["t2g"] if target_mapping is not None else []),
            output_entities=["ctx"],
        )

        context = AnalysisContext(
            adata=adata,
            bootstraps=bootstraps,
            target_mapping=mapping,
            aggregation_column=aggregation_column if mapping is not None else None,
            size_factors=sf,
            technical_variance=technical_variance,
            bootstrap_summary=bootstrap_summary,
            provenance=[ir],
            settings={"min_reads": min_reads, "min_prop": min_prop},
        )
        logger.info(f"Analysis context ready: {context!r}")
        return context, stats, ir

    def read_kallisto(
        self, path: str, sample: str, read_bootstraps: bool = True
    ) -> KallistoSample:
        """
        Read one kallisto output.

        ``path`` may be an ``abundance.h5``/``abundance.tsv`` file or the
        kallisto output directory (HDF5 preferred, since only it carries
        bootstraps).

        Raises:
            QuantificationError: If the output is missing or malformed
        """
        resolved = self._resolve_abundance(Path(path).expanduser(), sample)
        try:
            if resolved.suffix == ".h5":
                return self._read_kallisto_h5(resolved, sample, read_bootstraps)
            return self._read_kallisto_tsv(resolved, sample)
        except QuantificationError:
            raise
        except (OSError, KeyError, ValueError, pd.errors.ParserError) as e:
            raise QuantificationError(
                f"Malformed kallisto output for sample '{sample}' at {resolved}: {e}",
                details={"sample": sample, "path": str(resolved)},
            ) from e

    def technical_variance(
        self,
        bootstraps: Dict[str, np.ndarray],
        size_factors: pd.Series,
        passed: np.ndarray,
        filtered_ids: pd.Index,
        n_samples: int,
    ) -> pd.Series:
        """
        Mean over samples of the per-sample bootstrap variance of the
        transformed, normalized counts for every filtered transcript.

        Samples without (enough) bootstraps are skipped; without any usable
        bootstraps the technical variance is zero.
        """
        usable = {k: v for k, v in bootstraps.items() if v.shape[0] >= 2}
        if not usable:
            logger.warning(
                "No bootstraps available; technical variance is set to zero "
                "(run kallisto with -b to estimate it)"
            )
            return pd.Series(0.0, index=filtered_ids, name="sigma_q_sq")

        if len(usable) < n_samples:
            logger.warning(
                f"Bootstraps available for {len(usable)} of {n_samples} samples only"
            )

        variances = []
        for sample, bs in usable.items():
            scaled = transform(bs[:, passed] / size_factors[sample])
            variances.append(scaled.var(axis=0, ddof=1))
        sigma_q_sq = np.mean(np.vstack(variances), axis=0)
        return pd.Series(sigma_q_sq, index=filtered_ids, name="sigma_q_sq")

    def summarize_bootstraps(
        self,
        bootstraps: Dict[str, np.ndarray],
        size_factors: pd.Series,
        passed: np.ndarray,
        filtered_ids: pd.Index,
    ) -> Optional[pd.DataFrame]:
        """
        Per-sample quantiles of the normalized bootstrap counts.

        Returns:
            Long table with target_id, sample, min, lower, mid, upper, max;
            None when no bootstraps were read
        """
        if not bootstraps:
            logger.warning("Extra bootstrap summary requested but no bootstraps were read")
            return None

        frames = []
        for sample, bs in bootstraps.items():
            scaled = bs[:, passed] / size_factors[sample]
            q = np.quantile(scaled, [0.0, 0.25, 0.5, 0.75, 1.0], axis=0)
            frames.append(
                pd.DataFrame(
                    {
                        "target_id": filtered_ids,
                        "sample": sample,
                        "min": q[0],
                        "lower": q[1],
                        "mid": q[2],
                        "upper": q[3],
                        "max": q[4],
                    }
                )
            )
        return pd.concat(frames, ignore_index=True)

    def _validate_sample_table(self, table: pd.DataFrame) -> pd.DataFrame:
        missing = [c for c in (SAMPLE_COLUMN, PATH_COLUMN) if c not in table.columns]
        if missing:
            raise QuantificationError(
                f"Sample table lacks required columns {missing}",
                details={"missing_columns": missing, "available": list(table.columns)},
            )
        if table.empty:
            raise QuantificationError("Sample table is empty")

        ids = table[SAMPLE_COLUMN].astype(str)
        duplicated = sorted(ids[ids.duplicated()].unique())
        if duplicated:
            raise QuantificationError(
                f"Duplicate samples in sample table: {duplicated}",
                details={"duplicates": duplicated},
            )

        metadata = table.copy()
        metadata[SAMPLE_COLUMN] = ids
        return metadata.set_index(SAMPLE_COLUMN, drop=False).rename_axis(None)

    def _validate_mapping_config(
        self, target_mapping: Optional[pd.DataFrame], aggregation_column: Optional[str]
    ) -> None:
        if target_mapping is None:
            if aggregation_column is not None:
                raise QuantificationError(
                    "aggregation_column requires a target_mapping",
                    details={"aggregation_column": aggregation_column},
                )
            return

        if "target_id" not in target_mapping.columns:
            raise QuantificationError(
                "target_mapping must contain a 'target_id' column",
                details={"available": list(target_mapping.columns)},
            )
        if aggregation_column is not None and (
            aggregation_column == "target_id"
            or aggregation_column not in target_mapping.columns
        ):
            raise QuantificationError(
                f"aggregation_column '{aggregation_column}' is not a mapping column. "
                f"Available: {[c for c in target_mapping.columns if c != 'target_id']}",
                details={"aggregation_column": aggregation_column},
            )

    def _attach_mapping(self, var: pd.DataFrame, target_mapping: pd.DataFrame) -> pd.DataFrame:
        mapping = target_mapping.copy()
        mapping["target_id"] = mapping["target_id"].astype(str)
        n_dupes = int(mapping["target_id"].duplicated().sum())
        if n_dupes:
            logger.warning(
                f"target_mapping has {n_dupes} duplicated target ids; keeping the first"
            )
            mapping = mapping.drop_duplicates(subset="target_id")
        mapping = mapping.set_index("target_id")

        matched = var.index.isin(mapping.index)
        if not matched.any():
            raise QuantificationError(
                "No target ids of the quantifications occur in target_mapping. "
                "Check that the annotation release (and id versions) match the "
                "kallisto index.",
                details={
                    "example_quant_ids": list(var.index[:3]),
                    "example_mapping_ids": list(mapping.index[:3]),
                },
            )
        if not matched.all():
            logger.warning(
                f"{int((~matched).sum())} of {len(matched)} target ids have no "
                "entry in target_mapping"
            )

        columns = [c for c in mapping.columns if c not in var.columns]
        return var.join(mapping[columns], how="left")

    def _check_consistent_targets(self, samples: List[KallistoSample]) -> np.ndarray:
        reference = samples[0]
        for other in samples[1:]:
            if len(other.target_ids) != len(reference.target_ids) or not np.array_equal(
                other.target_ids, reference.target_ids
            ):
                raise QuantificationError(
                    f"Sample '{other.sample}' was quantified against different "
                    f"targets than '{reference.sample}'",
                    details={"sample": other.sample, "reference": reference.sample},
                )
        if len(set(reference.target_ids)) != len(reference.target_ids):
            raise QuantificationError(
                f"Duplicate target ids in quantification of '{reference.sample}'",
                details={"sample": reference.sample},
            )
        return reference.target_ids

    def _resolve_abundance(self, path: Path, sample: str) -> Path:
        if path.is_dir():
            for name in (KALLISTO_H5, KALLISTO_TSV):
                if (path / name).exists():
                    return path / name
        elif path.exists():
            return path
        elif path.suffix == ".h5" and path.with_suffix(".tsv").exists():
            logger.warning(f"{path} not found; falling back to {path.with_suffix('.tsv')}")
            return path.with_suffix(".tsv")

        raise QuantificationError(
            f"No kallisto quantification for sample '{sample}' at {path}",
            details={"sample": sample, "path": str(path)},
        )

    def _read_kallisto_h5(
        self, h5_file: Path, sample: str, read_bootstraps: bool
    ) -> KallistoSample:
        with h5py.File(h5_file, "r") as f:
            target_ids = f["aux"]["ids"][:]
            target_ids = np.array(
                [t.decode("utf-8") if isinstance(t, bytes) else str(t) for t in target_ids],
                dtype=object,
            )
            length = np.asarray(f["aux"]["lengths"][:], dtype=np.float64)
            eff_length = np.asarray(f["aux"]["eff_lengths"][:], dtype=np.float64)
            est_counts = np.asarray(f["est_counts"][:], dtype=np.float64)

            bootstraps = None
            if read_bootstraps and "bootstrap" in f:
                group = f["bootstrap"]
                names = sorted(group.keys(), key=lambda k: int(k[2:]))
                if names:
                    bootstraps = np.vstack(
                        [np.asarray(group[k][:], dtype=np.float64) for k in names]
                    )

        n = len(target_ids)
        for label, values in (
            ("lengths", length),
            ("eff_lengths", eff_length),
            ("est_counts", est_counts),
        ):
            if len(values) != n:
                raise QuantificationError(
                    f"{h5_file}: {label} has {len(values)} entries for {n} targets",
                    details={"sample": sample, "path": str(h5_file)},
                )
        if bootstraps is not None and bootstraps.shape[1] != n:
            raise QuantificationError(
                f"{h5_file}: bootstraps have {bootstraps.shape[1]} entries for {n} targets",
                details={"sample": sample, "path": str(h5_file)},
            )

        return KallistoSample(
            sample=sample,
            target_ids=target_ids,
            length=length,
            eff_length=eff_length,
            est_counts=est_counts,
            tpm=tpm_from_counts(est_counts, eff_length),
            bootstraps=bootstraps,
            source=str(h5_file),
        )

    def _read_kallisto_tsv(self, tsv_file: Path, sample: str) -> KallistoSample:
        df = pd.read_csv(tsv_file, sep="\t")
        missing = [c for c in TSV_COLUMNS if c not in df.columns]
        if missing:
            raise QuantificationError(
                f"{tsv_file} lacks kallisto columns {missing}",
                details={"sample": sample, "path": str(tsv_file)},
            )
        if df[["length", "eff_length", "est_counts", "tpm"]].isna().any().any():
            raise QuantificationError(
                f"{tsv_file} contains missing values",
                details={"sample": sample, "path": str(tsv_file)},
            )
        return KallistoSample(
            sample=sample,
            target_ids=df["target_id"].astype(str).to_numpy(dtype=object),
            length=df["length"].to_numpy(dtype=np.float64),
            eff_length=df["eff_length"].to_numpy(dtype=np.float64),
            est_counts=df["est_counts"].to_numpy(dtype=np.float64),
            tpm=df["tpm"].to_numpy(dtype=np.float64),
            bootstraps=None,
            source=str(tsv_file),
        )

