"""Domain models and error taxonomy for the health event stream."""
