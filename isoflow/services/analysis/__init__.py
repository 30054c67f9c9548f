"""Quantification, model fitting, testing and results services."""
