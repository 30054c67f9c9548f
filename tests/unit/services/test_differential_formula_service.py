"""
Unit tests for the differential formula service.

Tests R-style formula parsing, treatment-coded design matrices and the
validation of experimental designs.
"""

import numpy as np
import pandas as pd
import pytest

from isoflow.core import DesignMatrixError, FormulaError
from isoflow.services.analysis.differential_formula_service import (
    INTERCEPT,
    DifferentialFormulaService,
)


@pytest.fixture
def sample_metadata():
    """Create sample metadata for testing."""
    return pd.DataFrame({
        'treatment': ['control', 'control', 'control', 'drug', 'drug', 'drug', 'control', 'drug'],
        'sex': ['male', 'female', 'male', 'female', 'male', 'female', 'female', 'male'],
        'tissue': ['cortex', 'cortex', 'hippocampus', 'hippocampus', 'cortex', 'hippocampus', 'hippocampus', 'cortex'],
        'age': [8, 9, 10, 8, 9, 10, 11, 12],
    }, index=[f'S{i}' for i in range(1, 9)])


@pytest.fixture
def formula_service():
    """Create DifferentialFormulaService for testing."""
    return DifferentialFormulaService()


class TestFormulaParsingBasic:
    """Test basic formula parsing functionality."""

    def test_parse_simple_formula(self, formula_service, sample_metadata):
        """Test parsing simple formula."""
        result = formula_service.parse_formula('~treatment', sample_metadata)

        assert result['formula_string'] == '~treatment'
        assert result['response_variable'] is None
        assert result['intercept'] is True
        assert len(result['predictor_terms']) == 1
        assert result['predictor_terms'][0]['type'] == 'main_effect'

    def test_parse_formula_with_covariates(self, formula_service, sample_metadata):
        """Test parsing formula with multiple covariates."""
        result = formula_service.parse_formula('~sex + tissue + treatment', sample_metadata)

        terms = [term['term'] for term in result['predictor_terms']]
        assert terms == ['sex', 'tissue', 'treatment']

    def test_formula_without_tilde(self, formula_service, sample_metadata):
        """Test that a bare predictor list is accepted."""
        result = formula_service.parse_formula('sex + treatment', sample_metadata)

        assert result['formula_string'] == '~sex + treatment'

    def test_crossed_terms_expand(self, formula_service, sample_metadata):
        """Test that a*b expands to a + b + a:b."""
        result = formula_service.parse_formula('~sex*treatment', sample_metadata)

        terms = [term['term'] for term in result['predictor_terms']]
        assert terms == ['sex', 'treatment', 'sex:treatment']

    def test_duplicate_terms_dropped(self, formula_service, sample_metadata):
        """Test that repeated main effects are parsed once."""
        result = formula_service.parse_formula(
            '~treatment + sex + treatment*sex', sample_metadata
        )

        assert len(result['predictor_terms']) == 3

    @pytest.mark.parametrize('formula', ['~0 + treatment', '~treatment - 1', '~-1 + treatment'])
    def test_intercept_removal(self, formula_service, sample_metadata, formula):
        """Test intercept removal syntax."""
        result = formula_service.parse_formula(formula, sample_metadata)

        assert result['intercept'] is False

    def test_intercept_only(self, formula_service, sample_metadata):
        """Test the intercept-only model."""
        result = formula_service.parse_formula('~1', sample_metadata)

        assert result['predictor_terms'] == []
        assert result['intercept'] is True

    def test_variable_types(self, formula_service, sample_metadata):
        """Test categorical and continuous detection."""
        result = formula_service.parse_formula('~treatment + age', sample_metadata)

        info = result['variable_info']
        assert info['treatment']['type'] == 'categorical'
        assert info['treatment']['levels'] == ['control', 'drug']
        assert info['age']['type'] == 'continuous'

    def test_reference_level(self, formula_service, sample_metadata):
        """Test custom reference levels."""
        result = formula_service.parse_formula(
            '~treatment', sample_metadata, reference_levels={'treatment': 'drug'}
        )

        assert result['variable_info']['treatment']['reference_level'] == 'drug'


class TestFormulaParsingErrors:
    """Test formula parsing failures."""

    def test_missing_variable(self, formula_service, sample_metadata):
        with pytest.raises(FormulaError, match='not found'):
            formula_service.parse_formula('~treatment + batch', sample_metadata)

    @pytest.mark.parametrize('formula', ['', '~', '   '])
    def test_empty_formula(self, formula_service, sample_metadata, formula):
        with pytest.raises(FormulaError):
            formula_service.parse_formula(formula, sample_metadata)

    def test_multiple_tildes(self, formula_service, sample_metadata):
        with pytest.raises(FormulaError, match='Invalid formula'):
            formula_service.parse_formula('y ~ a ~ b', sample_metadata)

    def test_three_way_interaction_rejected(self, formula_service, sample_metadata):
        with pytest.raises(FormulaError, match='two-way'):
            formula_service.parse_formula('~sex:tissue:treatment', sample_metadata)

    def test_missing_values(self, formula_service, sample_metadata):
        metadata = sample_metadata.copy()
        metadata.loc['S1', 'sex'] = np.nan

        with pytest.raises(FormulaError, match='missing values'):
            formula_service.parse_formula('~sex', metadata)


class TestDesignMatrix:
    """Test design matrix construction."""

    def test_treatment_coding(self, formula_service, sample_metadata):
        design = formula_service.build_design('~sex + treatment', sample_metadata)

        assert list(design.columns) == [INTERCEPT, 'sex[T.male]', 'treatment[T.drug]']
        assert (design[INTERCEPT] == 1).all()
        np.testing.assert_array_equal(
            design['treatment[T.drug]'].to_numpy(),
            (sample_metadata['treatment'] == 'drug').astype(float).to_numpy(),
        )
        assert list(design.index) == list(sample_metadata.index)

    def test_reference_level_changes_columns(self, formula_service, sample_metadata):
        design = formula_service.build_design(
            '~treatment', sample_metadata, reference_levels={'treatment': 'drug'}
        )

        assert list(design.columns) == [INTERCEPT, 'treatment[T.control]']

    def test_continuous_column(self, formula_service, sample_metadata):
        design = formula_service.build_design('~age', sample_metadata)

        np.testing.assert_array_equal(design['age'].to_numpy(), sample_metadata['age'].to_numpy())

    def test_interaction_columns(self, formula_service, sample_metadata):
        design = formula_service.build_design('~sex*treatment', sample_metadata)

        assert 'sex[T.male]:treatment[T.drug]' in design.columns
        expected = design['sex[T.male]'] * design['treatment[T.drug]']
        np.testing.assert_array_equal(
            design['sex[T.male]:treatment[T.drug]'].to_numpy(), expected.to_numpy()
        )

    def test_no_intercept_design(self, formula_service, sample_metadata):
        design = formula_service.build_design('~0 + age', sample_metadata)

        assert list(design.columns) == ['age']

    def test_rank_reported(self, formula_service, sample_metadata):
        components = formula_service.parse_formula('~sex + tissue + treatment', sample_metadata)
        result = formula_service.construct_design_matrix(components, sample_metadata)

        assert result['rank'] == result['n_coefficients'] == 4

    def test_rank_deficient_design(self, formula_service, sample_metadata):
        metadata = sample_metadata.copy()
        metadata['group'] = metadata['treatment']

        with pytest.raises(DesignMatrixError, match='rank deficient'):
            formula_service.build_design('~treatment + group', metadata)

    def test_saturated_design(self, formula_service, sample_metadata):
        metadata = sample_metadata.iloc[:2]

        with pytest.raises(DesignMatrixError):
            formula_service.build_design('~treatment + sex', metadata)

    def test_empty_design(self, formula_service, sample_metadata):
        with pytest.raises(DesignMatrixError, match='no columns'):
            formula_service.build_design('~0', sample_metadata)


class TestExperimentalDesignValidation:
    """Test design validation."""

    def test_balanced_design(self, formula_service, sample_metadata):
        result = formula_service.validate_experimental_design(
            sample_metadata, '~sex + treatment'
        )

        assert result['valid'] is True
        assert result['design_summary']['treatment'] == {'control': 4, 'drug': 4}

    def test_low_replication_warning(self, formula_service, sample_metadata):
        metadata = sample_metadata.copy()
        metadata.loc['S1', 'treatment'] = 'vehicle'

        result = formula_service.validate_experimental_design(metadata, '~treatment')

        assert any('replicates' in warning for warning in result['warnings'])

    def test_small_sample_warning(self, formula_service, sample_metadata):
        result = formula_service.validate_experimental_design(
            sample_metadata.iloc[:4], '~treatment'
        )

        assert any('Small sample size' in warning for warning in result['warnings'])

    def test_invalid_formula_reported(self, formula_service, sample_metadata):
        result = formula_service.validate_experimental_design(sample_metadata, '~batch')

        assert result['valid'] is False
        assert result['errors']
