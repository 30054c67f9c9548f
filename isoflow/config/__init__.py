"""Configuration for isoflow."""
