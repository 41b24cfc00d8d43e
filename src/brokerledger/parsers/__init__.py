"""Statement parsers."""
