"""
Shared Infrastructure
=====================

Low-level technical concerns:
- Structured JSON logging
- Run- and request-scoped loggers
"""
