"""Core domain logic for the tamoxifen side effect tracker.

This package contains the business logic and domain models,
isolated from storage and network hosts for easy testing and reasoning.
"""
