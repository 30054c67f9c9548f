"""Stateless services; each operation returns (result, stats, AnalysisStep)."""
