"""Real-time health event aggregation and fan-out.

This package contains the domain models and the streaming engine,
isolated from the web surface so it can be tested and reasoned about on its own.
"""
