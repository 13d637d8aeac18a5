"""Application glue - configuration, reactive stores and the CLI."""
