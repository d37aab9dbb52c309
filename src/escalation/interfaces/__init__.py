"""
Escalation Interfaces Layer
===========================

Interface adapters (controllers) for the escalation module.

This is the outermost layer - handles HTTP requests/responses and
delegates to application services.
"""

from src.escalation.interfaces.controllers import cron_router, ticket_router, rule_router

__all__ = ["cron_router", "ticket_router", "rule_router"]
