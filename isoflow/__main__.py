#!/usr/bin/env python3
"""
isoflow - transcript-level differential expression with gene-level aggregation

Entry point for running as a module: python -m isoflow
"""

from isoflow.cli import app

if __name__ == "__main__":
    app()
