"""
Freight SLA Enforcer
====================

SLA rule evaluation and violation enforcement service for freight shipments.
"""

__version__ = "1.0.0"
