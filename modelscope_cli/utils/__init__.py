"""
Shared helpers: path normalization, formatting, logging and resilience utilities.
"""
