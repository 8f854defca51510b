"""Event publishing package."""
