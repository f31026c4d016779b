"""Supporting functionality for the `hmwave` package."""
