"""
Escalation Interfaces Layer
===========================

API controllers for the escalation module.
"""

from escalation.interfaces.controllers import escalation_router

__all__ = ["escalation_router"]
