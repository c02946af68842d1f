"""
SupplyTrace - Core Package

This package contains the supply-chain analytics pipeline: multi-source
extraction, cleaning, feature derivation, analytic loading and the
anomaly and predictive engines built on top of it.
"""

__version__ = "0.1.0"
