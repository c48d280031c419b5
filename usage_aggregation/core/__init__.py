"""
Core modules for usage aggregation.

This package contains the event store, the aggregators, proration and
rounding helpers, and the engine entry points.
"""
