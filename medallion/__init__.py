"""
medallion-etl: idempotent Bronze -> Silver -> Gold batch loading into a star schema.
"""

__version__ = "0.1.0"
