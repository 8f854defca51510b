"""Order lifecycle service package."""
