"""
Core package for configuration, logging and shared error types.
"""
