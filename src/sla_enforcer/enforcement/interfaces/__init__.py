"""
SLA Interfaces Layer
=====================

HTTP API routes for SLA enforcement.
"""

from sla_enforcer.enforcement.interfaces.controllers import sla_router

__all__ = ["sla_router"]
