"""
SupplyTrace Analytics

Extract, clean, transform and load supply-chain product, certification and
sensor-event data, and serve anomaly scores and lifecycle forecasts from it.
"""
