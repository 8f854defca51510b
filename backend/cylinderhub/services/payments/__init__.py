"""Payment authorization package."""
