"""Clock and configuration helpers."""
