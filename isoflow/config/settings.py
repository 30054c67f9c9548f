"""
Application settings and configuration.

This module centralizes the runtime configuration of isoflow. Values come
from environment variables (optionally loaded from a ``.env`` file) with
defaults matching a standard kallisto + Ensembl BioMart setup.
"""

import os
from pathlib import Path
from typing import Any, Dict

from dotenv import load_dotenv

DEFAULT_BIOMART_HOST = "www.ensembl.org"
DEFAULT_BIOMART_DATASET = "mmusculus_gene_ensembl"


class Settings:
    """
    Application settings with environment variable support.

    Every attribute can be overridden via an ``ISOFLOW_*`` environment
    variable, which keeps notebooks, CI and containers configurable
    without code changes.
    """

    def __init__(self):
        """Initialize application settings."""
        load_dotenv()

        # Logging settings
        self.LOG_LEVEL = os.environ.get("ISOFLOW_LOG_LEVEL", "INFO").upper()

        # Workspace (annotation cache, live viewer snapshots)
        self.WORKSPACE = Path(
            os.environ.get("ISOFLOW_WORKSPACE", str(Path.cwd() / ".isoflow"))
        ).expanduser()

        # Quantification layout: <base>/<subdir>/<sample>/<abundance file>
        self.ABUNDANCE_FILE = os.environ.get("ISOFLOW_ABUNDANCE_FILE", "abundance.h5")
        self.QUANT_SUBDIR = os.environ.get("ISOFLOW_QUANT_SUBDIR", "kallisto")

        # Annotation service
        self.BIOMART_HOST = os.environ.get("ISOFLOW_BIOMART_HOST", DEFAULT_BIOMART_HOST)
        self.BIOMART_DATASET = os.environ.get(
            "ISOFLOW_BIOMART_DATASET", DEFAULT_BIOMART_DATASET
        )
        self.BIOMART_TIMEOUT = int(os.environ.get("ISOFLOW_BIOMART_TIMEOUT", "120"))

        # Prep filter defaults
        self.FILTER_MIN_READS = float(os.environ.get("ISOFLOW_FILTER_MIN_READS", "5"))
        self.FILTER_MIN_PROP = float(os.environ.get("ISOFLOW_FILTER_MIN_PROP", "0.47"))

        # Live viewer
        self.LIVE_PORT = int(os.environ.get("ISOFLOW_LIVE_PORT", "42427"))

    @property
    def cache_dir(self) -> Path:
        """Directory for cached annotation tables."""
        return self.WORKSPACE / "cache"

    def get_all_settings(self) -> Dict[str, Any]:
        """
        Get all settings as a dictionary.

        Returns:
            dict: All settings
        """
        settings_dict = {}
        for attr in dir(self):
            if not attr.startswith("_") and not callable(getattr(self, attr)):
                settings_dict[attr] = getattr(self, attr)
        return settings_dict

    def get_setting(self, name: str, default: Any = None) -> Any:
        """
        Get a specific setting.

        Args:
            name: Setting name
            default: Default value if setting doesn't exist

        Returns:
            Value of the setting or default
        """
        return getattr(self, name, default)


# Create singleton instance
settings = Settings()


def get_settings() -> Settings:
    """
    Get the application settings.

    Returns:
        Settings: Application settings
    """
    return settings
