"""
Core package for shared utilities.

Holds configuration, structured logging, the error taxonomy and token
handling used across the fulfillment service.
"""
