"""Domain services for order fulfillment."""
