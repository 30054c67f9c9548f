"""Sample metadata services."""
