"""
Core modules for Spend Governor.

This package contains pricing, usage recording, window aggregation, budget
policy, alerting, enforcement and analytics.
"""
