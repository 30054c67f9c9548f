"""
Differential expression formula service for statistical design.

This module provides the DifferentialFormulaService that parses R-style
formulas (``~sex + tissue + treatment``) against the sample metadata and
builds the full-rank design matrices used by the model service.
"""

import re
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from isoflow.core import DesignMatrixError, FormulaError
from isoflow.utils.logger import get_logger

logger = get_logger(__name__)

INTERCEPT = "(Intercept)"


class DifferentialFormulaService:
    """
    Service for formula-based differential expression design.

    Supported syntax: main effects (``a + b``), pure interactions
    (``a:b``), crossed terms (``a*b`` = ``a + b + a:b``), an explicit
    intercept (``~1``) and intercept removal (``0`` or ``-1``).
    Categorical variables use treatment coding with the reference level
    first; coefficient names follow ``var[T.level]``.
    """

    def __init__(self):
        """Initialize the formula service."""
        self.logger = logger

    def parse_formula(
        self,
        formula: str,
        metadata: pd.DataFrame,
        reference_levels: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Parse R-style formula into components and validate against metadata.

        Args:
            formula: R-style formula string (e.g., "~condition + batch")
            metadata: Sample metadata DataFrame
            reference_levels: Optional reference levels for categorical variables

        Returns:
            Dict[str, Any]: Parsed formula components

        Raises:
            FormulaError: If formula is invalid or variables not found
        """
        self.logger.debug(f"Parsing formula: {formula}")

        try:
            formula = self._clean_formula(formula)
            response_var, predictor_string = self._split_formula(formula)
            terms, intercept = self._parse_terms(predictor_string)

            self._validate_variables(terms, metadata)
            variable_info = self._analyze_variables(terms, metadata, reference_levels)

            formula_components = {
                "formula_string": formula,
                "response_variable": response_var,
                "predictor_terms": terms,
                "intercept": intercept,
                "variable_info": variable_info,
                "reference_levels": reference_levels or {},
                "n_samples": len(metadata),
            }

            self.logger.debug(
                f"Formula parsed: {len(terms)} terms, intercept={intercept}"
            )
            return formula_components

        except FormulaError:
            raise
        except Exception as e:
            raise FormulaError(f"Failed to parse formula '{formula}': {e}") from e

    def construct_design_matrix(
        self,
        formula_components: Dict[str, Any],
        metadata: pd.DataFrame,
    ) -> Dict[str, Any]:
        """
        Construct design matrix from parsed formula components.

        Args:
            formula_components: Parsed formula from parse_formula()
            metadata: Sample metadata DataFrame

        Returns:
            Dict[str, Any]: ``design_df`` (samples x coefficients),
                ``design_matrix``, ``coefficient_names``, ``rank``

        Raises:
            DesignMatrixError: If the design is empty, rank deficient or has
                no residual degrees of freedom
        """
        try:
            design_df = pd.DataFrame(index=metadata.index)
            if formula_components["intercept"]:
                design_df[INTERCEPT] = 1.0

            info = formula_components["variable_info"]
            for term in formula_components["predictor_terms"]:
                for name, values in self._term_columns(term, info, metadata).items():
                    design_df[name] = values

            if design_df.shape[1] == 0:
                raise DesignMatrixError("Design matrix has no columns")

            design_matrix = design_df.to_numpy(dtype=np.float64)
            self._validate_design_matrix(design_matrix, list(design_df.columns))

            result = {
                "design_matrix": design_matrix,
                "design_df": design_df.astype(np.float64),
                "coefficient_names": list(design_df.columns),
                "n_coefficients": design_matrix.shape[1],
                "rank": int(np.linalg.matrix_rank(design_matrix)),
                "formula_components": formula_components,
            }

            self.logger.debug(
                f"Design matrix constructed: {design_matrix.shape[0]} samples × "
                f"{design_matrix.shape[1]} coefficients"
            )
            return result

        except DesignMatrixError:
            raise
        except Exception as e:
            raise DesignMatrixError(f"Failed to construct design matrix: {e}") from e

    def build_design(
        self,
        formula: str,
        metadata: pd.DataFrame,
        reference_levels: Optional[Dict[str, str]] = None,
    ) -> pd.DataFrame:
        """Parse ``formula`` and return the design as a samples x coefficients frame."""
        components = self.parse_formula(formula, metadata, reference_levels)
        return self.construct_design_matrix(components, metadata)["design_df"]

    def validate_experimental_design(
        self, metadata: pd.DataFrame, formula: str, min_replicates: int = 2
    ) -> Dict[str, Any]:
        """
        Validate experimental design for statistical power.

        Args:
            metadata: Sample metadata
            formula: Formula string
            min_replicates: Minimum replicates per level

        Returns:
            Dict[str, Any]: ``valid``, ``warnings``, ``errors``, ``design_summary``
        """
        try:
            formula_components = self.parse_formula(formula, metadata)
        except FormulaError as e:
            return {
                "valid": False,
                "errors": [str(e)],
                "warnings": [],
                "design_summary": {},
            }

        validation_results = {
            "valid": True,
            "warnings": [],
            "errors": [],
            "design_summary": {},
        }

        n_samples = len(metadata)
        if n_samples < 6:
            validation_results["warnings"].append(
                f"Small sample size: {n_samples} samples"
            )

        for var, info in formula_components["variable_info"].items():
            if info["type"] != "categorical":
                continue
            counts = metadata[var].value_counts()
            if counts.min() < min_replicates:
                validation_results["warnings"].append(
                    f"Variable '{var}' has levels with <{min_replicates} replicates: "
                    f"{dict(counts)}"
                )
            validation_results["design_summary"][var] = {
                str(k): int(v) for k, v in counts.items()
            }

        return validation_results

    def _clean_formula(self, formula: str) -> str:
        """Clean and normalize formula string."""
        if formula is None:
            raise FormulaError("Empty formula")

        formula = re.sub(r"\s+", " ", str(formula).strip())
        if not formula.startswith("~") and "~" not in formula:
            formula = "~" + formula

        if formula.replace(" ", "") == "~":
            raise FormulaError("Empty formula")

        return formula

    def _split_formula(self, formula: str) -> Tuple[Optional[str], str]:
        """Split formula into response and predictor parts."""
        parts = formula.split("~")
        if len(parts) != 2:
            raise FormulaError(f"Invalid formula format: {formula}")

        response = parts[0].strip() or None
        predictors = parts[1].strip()
        if not predictors:
            raise FormulaError("No predictor variables specified")

        return response, predictors

    def _parse_terms(self, predictor_string: str) -> Tuple[List[Dict[str, Any]], bool]:
        """
        Parse predictor terms from formula string.

        Returns:
            Tuple of (terms, intercept flag); crossed terms are expanded and
            duplicate terms are dropped, keeping first occurrence.
        """
        intercept = True
        # "a - 1" -> "a + -1"
        predictor_string = re.sub(r"\s*-\s*1\b", " + -1", predictor_string)

        terms: List[Dict[str, Any]] = []
        seen = set()

        def add(variables: List[str], label: str) -> None:
            key = tuple(sorted(variables))
            if key in seen:
                return
            seen.add(key)
            terms.append(
                {
                    "term": label,
                    "type": "main_effect" if len(variables) == 1 else "interaction",
                    "variables": variables,
                    "order": len(variables),
                }
            )

        for raw in predictor_string.split("+"):
            term_str = raw.strip()
            if not term_str:
                continue
            if term_str == "1":
                intercept = True
                continue
            if term_str in ("0", "-1"):
                intercept = False
                continue

            if "*" in term_str:
                variables = [v.strip() for v in term_str.split("*")]
                if len(variables) != 2 or not all(variables):
                    raise FormulaError(
                        f"Only two-way crossed terms are supported: '{term_str}'"
                    )
                for var in variables:
                    add([var], var)
                add(variables, ":".join(variables))
            elif ":" in term_str:
                variables = [v.strip() for v in term_str.split(":")]
                if len(variables) != 2 or not all(variables):
                    raise FormulaError(
                        f"Only two-way interactions are supported: '{term_str}'"
                    )
                add(variables, term_str.replace(" ", ""))
            else:
                if not re.match(r"^[A-Za-z_.][\w.]*$", term_str):
                    raise FormulaError(f"Invalid term in formula: '{term_str}'")
                add([term_str], term_str)

        return terms, intercept

    def _validate_variables(
        self, terms: List[Dict[str, Any]], metadata: pd.DataFrame
    ) -> None:
        """Validate that all variables exist in metadata and have no missing values."""
        all_variables = []
        for term in terms:
            for var in term["variables"]:
                if var not in all_variables:
                    all_variables.append(var)

        missing_vars = [var for var in all_variables if var not in metadata.columns]
        if missing_vars:
            raise FormulaError(
                f"Variables not found in metadata: {missing_vars}. "
                f"Available variables: {list(metadata.columns)}"
            )

        with_na = [var for var in all_variables if metadata[var].isna().any()]
        if with_na:
            raise FormulaError(f"Variables with missing values: {with_na}")

    def _analyze_variables(
        self,
        terms: List[Dict[str, Any]],
        metadata: pd.DataFrame,
        reference_levels: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Dict[str, Any]]:
        """Analyze variable types and properties."""
        variable_info = {}

        for term in terms:
            for var in term["variables"]:
                if var in variable_info:
                    continue
                series = metadata[var]

                if pd.api.types.is_numeric_dtype(series) and not pd.api.types.is_bool_dtype(
                    series
                ):
                    variable_info[var] = {
                        "type": "continuous",
                        "levels": None,
                        "n_levels": None,
                        "reference_level": None,
                    }
                    continue

                levels = sorted(str(level) for level in series.unique())
                if reference_levels and var in reference_levels:
                    ref_level = str(reference_levels[var])
                    if ref_level in levels:
                        levels = [ref_level] + [lv for lv in levels if lv != ref_level]
                    else:
                        self.logger.warning(
                            f"Reference level '{ref_level}' not found for variable '{var}'"
                        )

                variable_info[var] = {
                    "type": "categorical",
                    "levels": levels,
                    "n_levels": len(levels),
                    "reference_level": levels[0],
                }

        return variable_info

    def _variable_columns(
        self, var: str, var_info: Dict[str, Any], metadata: pd.DataFrame
    ) -> Dict[str, np.ndarray]:
        """Treatment-coded columns for one variable."""
        if var_info["type"] == "continuous":
            return {var: metadata[var].to_numpy(dtype=np.float64)}

        values = metadata[var].astype(str)
        return {
            f"{var}[T.{level}]": (values == level).to_numpy(dtype=np.float64)
            for level in var_info["levels"][1:]
        }

    def _term_columns(
        self,
        term: Dict[str, Any],
        variable_info: Dict[str, Dict[str, Any]],
        metadata: pd.DataFrame,
    ) -> Dict[str, np.ndarray]:
        """Design columns contributed by one term."""
        if term["type"] == "main_effect":
            var = term["variables"][0]
            return self._variable_columns(var, variable_info[var], metadata)

        var1, var2 = term["variables"]
        cols1 = self._variable_columns(var1, variable_info[var1], metadata)
        cols2 = self._variable_columns(var2, variable_info[var2], metadata)
        return {
            f"{name1}:{name2}": values1 * values2
            for name1, values1 in cols1.items()
            for name2, values2 in cols2.items()
        }

    def _validate_design_matrix(
        self, design_matrix: np.ndarray, column_names: List[str]
    ) -> None:
        """Validate design matrix properties."""
        if np.any(~np.isfinite(design_matrix)):
            raise DesignMatrixError("Design matrix contains NaN or infinite values")

        n_samples, n_cols = design_matrix.shape
        rank = np.linalg.matrix_rank(design_matrix)
        if rank < n_cols:
            raise DesignMatrixError(
                f"Design matrix is rank deficient: rank {rank} < {n_cols} columns "
                f"({column_names}). This indicates collinear or constant variables."
            )

        if n_cols >= n_samples:
            raise DesignMatrixError(
                f"Design has {n_cols} coefficients but only {n_samples} samples; "
                "no residual degrees of freedom remain"
            )
