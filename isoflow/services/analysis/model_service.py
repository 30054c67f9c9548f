"""
Transcript-level linear model service.

Fits named linear models to the log-transformed, normalized abundances of
every filtered transcript and tests them. The variance model separates
technical variance (estimated from kallisto bootstraps) from biological
variance, which is shrunk towards a mean-variance trend before testing:

- ``fit`` attaches a named :class:`~isoflow.core.context.FittedModel`
- ``lrt`` compares a reduced model nested in a full model
- ``wald_test`` tests a single coefficient of one model

Every call returns a new context; earlier contexts remain valid.
"""

from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from scipy import stats as sp_stats
from statsmodels.nonparametric.smoothers_lowess import lowess
from statsmodels.stats.multitest import multipletests

from isoflow.core import ModelError, NonNestedModelsError
from isoflow.core.analysis_ir import AnalysisStep
from isoflow.core.context import AnalysisContext, FittedModel, TestResult
from isoflow.services.analysis.differential_formula_service import (
    DifferentialFormulaService,
)
from isoflow.utils.logger import get_logger

logger = get_logger(__name__)

N_BINS = 100
IQR_LOWER = 0.25
IQR_UPPER = 0.75
LOWESS_FRAC = 0.75
MIN_VARIANCE = 1e-12


def adjust_pvalues(pvals: pd.Series) -> pd.Series:
    """Benjamini-Hochberg q-values; NaN p-values stay NaN."""
    qvals = pd.Series(np.nan, index=pvals.index, name="qval")
    tested = pvals.notna()
    if tested.any():
        qvals[tested] = multipletests(pvals[tested].to_numpy(), method="fdr_bh")[1]
    return qvals


def sliding_window_grouping(
    mean_obs: np.ndarray,
    sigma_sq: np.ndarray,
    n_bins: int = N_BINS,
    lwr: float = IQR_LOWER,
    upr: float = IQR_UPPER,
) -> np.ndarray:
    """
    Select the points used to fit the mean-variance trend.

    Transcripts are binned by quantiles of ``mean_obs``; within each bin only
    points whose ``sigma_sq`` lies inside the [lwr, upr] quantile window are
    kept.

    Returns:
        Boolean mask over the input points
    """
    n_bins = max(1, min(n_bins, len(mean_obs)))
    bins = pd.qcut(pd.Series(mean_obs).rank(method="first"), n_bins, labels=False)
    frame = pd.DataFrame({"bin": bins.to_numpy(), "sigma_sq": sigma_sq})
    lower = frame.groupby("bin")["sigma_sq"].transform(lambda s: s.quantile(lwr))
    upper = frame.groupby("bin")["sigma_sq"].transform(lambda s: s.quantile(upr))
    return ((frame["sigma_sq"] >= lower) & (frame["sigma_sq"] <= upper)).to_numpy()


def shrink_variance(
    mean_obs: np.ndarray, sigma_sq_pmax: np.ndarray
) -> Tuple[np.ndarray, Dict[str, np.ndarray]]:
    """
    Shrink biological variances towards a lowess trend over mean abundance.

    The trend is fit on ``sigma_sq_pmax ** 0.25`` over the inter-quartile
    points of :func:`sliding_window_grouping` and evaluated at every
    transcript; the prediction is raised back to the 4th power.

    Returns:
        Tuple of (smoothed variances, shrinkage diagnostics)
    """
    iqr_mask = sliding_window_grouping(mean_obs, sigma_sq_pmax)
    x = mean_obs[iqr_mask]
    y = sigma_sq_pmax[iqr_mask] ** 0.25

    if np.unique(x).size < 3:
        logger.warning(
            "Too few transcripts to fit the mean-variance trend; variances are not shrunk"
        )
        return sigma_sq_pmax.copy(), {"iqr_mask": iqr_mask}

    curve = lowess(y, x, frac=LOWESS_FRAC, it=0, return_sorted=True)
    curve_x, curve_y = curve[:, 0], curve[:, 1]
    # lowess returns one row per input point; collapse tied x before interpolating
    trend = pd.Series(curve_y).groupby(curve_x).mean()
    predicted = np.interp(mean_obs, trend.index.to_numpy(), trend.to_numpy())
    smooth = np.clip(predicted, 0.0, None) ** 4

    return smooth, {
        "iqr_mask": iqr_mask,
        "curve_x": trend.index.to_numpy(),
        "curve_y": trend.to_numpy() ** 4,
    }


def log_likelihood(residuals: np.ndarray, variance: np.ndarray) -> np.ndarray:
    """Per-transcript normal log-likelihood of residuals (samples x transcripts)."""
    variance = np.maximum(variance, MIN_VARIANCE)
    n = residuals.shape[0]
    rss = np.sum(residuals**2, axis=0)
    return -0.5 * n * np.log(2 * np.pi * variance) - rss / (2 * variance)


class ModelService:
    """
    Stateless service for fitting and testing transcript-level models.

    Follows the three-tuple convention: operations return
    ``(AnalysisContext, stats_dict, AnalysisStep)``.
    """

    def __init__(self, formula_service: Optional[DifferentialFormulaService] = None):
        logger.debug("Initializing stateless ModelService")
        self.formula_service = formula_service or DifferentialFormulaService()

    def fit(
        self,
        context: AnalysisContext,
        formula: str,
        fit_name: str = "full",
        reference_levels: Optional[Dict[str, str]] = None,
    ) -> Tuple[AnalysisContext, Dict[str, Any], AnalysisStep]:
        """
        Fit ``formula`` to every filtered transcript.

        Args:
            context: Prepared analysis context
            formula: R-style formula over sample covariates
            fit_name: Name to store the fit under; refitting replaces it
            reference_levels: Optional reference level per categorical covariate

        Returns:
            Tuple[AnalysisContext, Dict[str, Any], AnalysisStep]

        Raises:
            FormulaError: If the formula is invalid for the sample metadata
            DesignMatrixError: If the design is rank deficient or saturated
        """
        logger.info(f"Fitting model '{fit_name}': {formula}")
        metadata = context.sample_metadata

        validation = self.formula_service.validate_experimental_design(metadata, formula)
        for warning in validation["warnings"]:
            logger.warning(f"Design '{fit_name}': {warning}")

        components = self.formula_service.parse_formula(formula, metadata, reference_levels)
        design_info = self.formula_service.construct_design_matrix(components, metadata)
        design = design_info["design_df"]

        y = context.transformed(filtered=True)
        X = design.to_numpy()
        Y = y.to_numpy()

        beta, _, _, _ = np.linalg.lstsq(X, Y, rcond=None)
        residuals = Y - X @ beta
        rss = np.sum(residuals**2, axis=0)
        df_residual = X.shape[0] - X.shape[1]

        mean_obs = Y.mean(axis=0)
        var_obs = Y.var(axis=0, ddof=1) if Y.shape[0] > 1 else np.zeros(Y.shape[1])
        tech_var = context.technical_variance.reindex(y.columns).to_numpy()

        sigma_sq = rss / df_residual - tech_var
        sigma_sq_pmax = np.maximum(sigma_sq, 0.0)
        smooth_sigma_sq, shrinkage = shrink_variance(mean_obs, sigma_sq_pmax)
        smooth_sigma_sq_pmax = np.maximum(smooth_sigma_sq, sigma_sq)
        final_sigma_sq = smooth_sigma_sq_pmax + tech_var

        summary = pd.DataFrame(
            {
                "rss": rss,
                "sigma_sq": sigma_sq,
                "sigma_sq_pmax": sigma_sq_pmax,
                "smooth_sigma_sq": smooth_sigma_sq,
                "smooth_sigma_sq_pmax": smooth_sigma_sq_pmax,
                "final_sigma_sq": final_sigma_sq,
                "mean_obs": mean_obs,
                "var_obs": var_obs,
                "tech_var": tech_var,
            },
            index=y.columns,
        )
        summary.index.name = "target_id"

        fit = FittedModel(
            name=fit_name,
            formula=components["formula_string"],
            design=design,
            beta=pd.DataFrame(beta.T, index=y.columns, columns=design.columns),
            residuals=residuals,
            summary=summary,
            shrinkage=shrinkage,
        )

        if fit_name in context.fits:
            logger.warning(f"Replacing existing fit '{fit_name}'")

        stats = {
            "fit_name": fit_name,
            "formula": fit.formula,
            "coefficients": fit.coefficient_names,
            "n_samples": X.shape[0],
            "n_transcripts": Y.shape[1],
            "df_residual": df_residual,
            "n_trend_points": int(shrinkage["iqr_mask"].sum()),
            "design_summary": validation["design_summary"],
        }

        ir = AnalysisStep(
            operation="isoflow.fit",
            tool_name="fit",
            description=f"Fit model '{fit_name}' ({fit.formula})",
            library="numpy",
            code_template="ctx = fit(ctx, {{ formula | tojson }}, {{ fit_name | tojson }})",
            imports=["from isoflow.api import fit"],
            parameters={
                "formula": fit.formula,
                "fit_name": fit_name,
                "reference_levels": dict(reference_levels or {}),
            },
            input_entities=["ctx"],
            output_entities=["ctx"],
        )

        logger.info(
            f"Fitted '{fit_name}': {Y.shape[1]} transcripts, "
            f"{X.shape[1]} coefficients, {df_residual} residual df"
        )
        return context.with_fit(fit, ir), stats, ir

    def lrt(
        self,
        context: AnalysisContext,
        null_model: str = "reduced",
        alt_model: str = "full",
    ) -> Tuple[AnalysisContext, Dict[str, Any], AnalysisStep]:
        """
        Likelihood-ratio test of ``null_model`` nested in ``alt_model``.

        The test is stored as ``"<null_model>:<alt_model>"`` under type ``lrt``.

        Raises:
            ModelNotFoundError: If either model has not been fitted
            NonNestedModelsError: If the null design is not nested in the
                alternative design
        """
        null_fit = context.get_fit(null_model)
        alt_fit = context.get_fit(alt_model)
        self.check_nested(null_fit, alt_fit)

        test_name = f"{null_model}:{alt_model}"
        logger.info(f"Running likelihood-ratio test {test_name}")

        null_ll = log_likelihood(
            null_fit.residuals, null_fit.summary["final_sigma_sq"].to_numpy()
        )
        alt_ll = log_likelihood(
            alt_fit.residuals, alt_fit.summary["final_sigma_sq"].to_numpy()
        )
        test_stat = 2.0 * (alt_ll - null_ll)
        degrees_free = alt_fit.n_coefficients - null_fit.n_coefficients

        table = pd.DataFrame(
            {
                "test_stat": test_stat,
                "degrees_free": degrees_free,
                "pval": sp_stats.chi2.sf(test_stat, degrees_free),
            },
            index=alt_fit.summary.index,
        )
        table["qval"] = adjust_pvalues(table["pval"])
        table = table.join(
            alt_fit.summary[
                [
                    "rss",
                    "sigma_sq",
                    "smooth_sigma_sq",
                    "final_sigma_sq",
                    "mean_obs",
                    "var_obs",
                    "tech_var",
                ]
            ]
        )

        result = TestResult(
            name=test_name,
            test_type="lrt",
            table=table,
            models={"null": null_model, "alt": alt_model},
        )

        stats = {
            "test": test_name,
            "test_type": "lrt",
            "degrees_free": degrees_free,
            "n_tested": int(table["pval"].notna().sum()),
            "n_significant_0.05": int((table["qval"] <= 0.05).sum()),
        }

        ir = AnalysisStep(
            operation="isoflow.lrt",
            tool_name="lrt",
            description=f"Likelihood-ratio test {test_name}",
            library="scipy",
            code_template="ctx = lrt(ctx, {{ null_model | tojson }}, {{ alt_model | tojson }})",
            imports=["from isoflow.api import lrt"],
            parameters={"null_model": null_model, "alt_model": alt_model},
            input_entities=["ctx"],
            output_entities=["ctx"],
        )

        logger.info(
            f"LRT {test_name}: {stats['n_significant_0.05']} of {stats['n_tested']} "
            "transcripts with qval <= 0.05"
        )
        return context.with_test(result, ir), stats, ir

    def wald_test(
        self,
        context: AnalysisContext,
        which_beta: str,
        which_model: str = "full",
    ) -> Tuple[AnalysisContext, Dict[str, Any], AnalysisStep]:
        """
        Wald test of one coefficient of a fitted model.

        The test is stored under ``which_beta`` with type ``wt``; testing the
        same coefficient of another model replaces it.

        Raises:
            ModelNotFoundError: If the model has not been fitted
            ModelError: If ``which_beta`` is not a coefficient of the model
        """
        fit = context.get_fit(which_model)
        if which_beta not in fit.coefficient_names:
            raise ModelError(
                f"'{which_beta}' is not a coefficient of model '{which_model}'. "
                f"Valid coefficients: {fit.coefficient_names}",
                details={"coefficients": fit.coefficient_names},
            )

        logger.info(f"Running Wald test of '{which_beta}' in model '{which_model}'")
        X = fit.design.to_numpy()
        xtx_inv = np.linalg.inv(X.T @ X)
        j = fit.coefficient_names.index(which_beta)

        b = fit.beta[which_beta].to_numpy()
        final_sigma_sq = np.maximum(fit.summary["final_sigma_sq"].to_numpy(), MIN_VARIANCE)
        se_b = np.sqrt(final_sigma_sq * xtx_inv[j, j])

        table = pd.DataFrame(
            {
                "b": b,
                "se_b": se_b,
                "pval": 2.0 * sp_stats.norm.sf(np.abs(b / se_b)),
            },
            index=fit.summary.index,
        )
        table["qval"] = adjust_pvalues(table["pval"])
        table = table.join(
            fit.summary[
                [
                    "rss",
                    "sigma_sq",
                    "smooth_sigma_sq",
                    "final_sigma_sq",
                    "mean_obs",
                    "var_obs",
                    "tech_var",
                ]
            ]
        )

        test_name = which_beta
        previous = context.tests.get("wt", {}).get(test_name)
        if previous is not None and previous.models.get("model") != which_model:
            logger.warning(
                f"Replacing Wald test of '{which_beta}' in model "
                f"'{previous.models.get('model')}'"
            )
        result = TestResult(
            name=test_name,
            test_type="wt",
            table=table,
            models={"model": which_model, "beta": which_beta},
        )

        stats = {
            "test": test_name,
            "test_type": "wt",
            "n_tested": int(table["pval"].notna().sum()),
            "n_significant_0.05": int((table["qval"] <= 0.05).sum()),
        }

        ir = AnalysisStep(
            operation="isoflow.wt",
            tool_name="wald_test",
            description=f"Wald test of {which_beta} in '{which_model}'",
            library="scipy",
            code_template="ctx = wt(ctx, {{ which_beta | tojson }}, {{ which_model | tojson }})",
            imports=["from isoflow.api import wt"],
            parameters={"which_beta": which_beta, "which_model": which_model},
            input_entities=["ctx"],
            output_entities=["ctx"],
        )
        return context.with_test(result, ir), stats, ir

    def list_models(self, context: AnalysisContext) -> Dict[str, str]:
        """Fitted model names mapped to their formulas."""
        return {name: fit.formula for name, fit in context.fits.items()}

    def list_tests(self, context: AnalysisContext) -> Dict[str, List[str]]:
        """Test types mapped to the names of the tests run so far."""
        return {kind: sorted(named) for kind, named in context.tests.items() if named}

    @staticmethod
    def check_nested(null_fit: FittedModel, alt_fit: FittedModel, tol: float = 1e-8) -> None:
        """
        Require the null design to lie in the column space of the alternative.

        Raises:
            NonNestedModelsError: If the designs are not nested
        """
        if not null_fit.design.index.equals(alt_fit.design.index):
            raise NonNestedModelsError(
                f"Models '{null_fit.name}' and '{alt_fit.name}' were fitted on "
                "different samples"
            )
        if null_fit.n_coefficients >= alt_fit.n_coefficients:
            raise NonNestedModelsError(
                f"Model '{null_fit.name}' ({null_fit.formula}) has "
                f"{null_fit.n_coefficients} coefficients, not fewer than the "
                f"{alt_fit.n_coefficients} of '{alt_fit.name}' ({alt_fit.formula})",
                details={"null": null_fit.formula, "alt": alt_fit.formula},
            )

        X_null = null_fit.design.to_numpy()
        X_alt = alt_fit.design.to_numpy()
        coef, _, _, _ = np.linalg.lstsq(X_alt, X_null, rcond=None)
        residual = np.linalg.norm(X_null - X_alt @ coef)
        if residual > tol * max(1.0, np.linalg.norm(X_null)):
            raise NonNestedModelsError(
                f"Model '{null_fit.name}' ({null_fit.formula}) is not nested in "
                f"'{alt_fit.name}' ({alt_fit.formula})",
                details={"null": null_fit.formula, "alt": alt_fit.formula},
            )
