"""
ETL Package

Loaders writing transformed rows into the analytic store.
"""
from src.supplytrace.etl.loaders import AnalyticLoader, ConcurrentLoader

__all__ = ["AnalyticLoader", "ConcurrentLoader"]
