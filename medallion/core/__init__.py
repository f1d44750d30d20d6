"""
Core domain logic: models, normalization, deduplication and key resolution.
"""
