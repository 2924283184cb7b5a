"""
Core modules for Founder Metrics.

This package contains the metrics engine: cost and revenue aggregation,
metrics composition, and the error taxonomy.
"""
