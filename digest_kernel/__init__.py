"""
Digest Kernel - shared infrastructure for the daily sales digest.

Provides:
- Structured JSON logging with run-scoped context
- Typed exception hierarchy with machine-readable codes
- Injectable clock
- SQLAlchemy declarative base and session helpers
"""

__version__ = "0.1.0"
