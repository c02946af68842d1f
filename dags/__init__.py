"""
Airflow DAGs Package

Contains the DAG definitions for the supply chain analytics pipeline.

DAGs:
- supply_chain_analytics: Extract, clean, transform and load all sources (hourly)
- model_training: Retrain and promote the anomaly and predictive engines (Sundays 2:00 AM)
"""
