"""Annotation retrieval services."""
