"""Test package so fixtures and doubles import as `tests.*`."""
