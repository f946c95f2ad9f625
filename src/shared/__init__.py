"""
Shared Kernel Module
====================

Shared infrastructure used by the escalation bounded context: structured
logging, request middleware and exception handlers.

DO NOT add escalation business logic to the shared kernel.
"""

__version__ = "1.0.0"
