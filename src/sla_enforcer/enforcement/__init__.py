"""
SLA Enforcement Module
=======================

Evaluates shipments against SLA rules, records violations once per breach
episode and runs the configured remedial actions.

Layers:
- domain: entities, rule evaluation, candidate criteria, channel actions
- application: services, repository interfaces, DTOs
- infrastructure: SQLAlchemy persistence, channels, scheduler, engine
- interfaces: FastAPI routes
"""
