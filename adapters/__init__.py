"""Delivery adapters around the health event stream core."""
