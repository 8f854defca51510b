"""Geofenced driver dispatch package."""
