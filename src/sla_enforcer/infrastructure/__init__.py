"""
Infrastructure Layer
=====================

Application-wide technical infrastructure:
- Database connection management
"""
