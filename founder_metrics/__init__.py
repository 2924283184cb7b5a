"""
Founder Metrics.

Business metrics (MRR, ARR, gross margin, cost and revenue breakdowns) and
admin operations for a chatbot SaaS platform.
"""

__version__ = "0.1.0"
