"""
Shared API
==========

Middleware and exception handlers mounted on the FastAPI application.
"""
