"""
Core modules for AI Key Guard.

This package contains usage aggregation, anomaly detection, risk scoring,
budget monitoring, credential rotation and report publishing.
"""
