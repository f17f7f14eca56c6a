"""
Infrastructure Layer
=====================

Low-level technical concerns shared by every module:
- Logging setup
- Keyed asyncio locks
"""
