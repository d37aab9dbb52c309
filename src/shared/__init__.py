"""
Shared Kernel Module
====================

Generic infrastructure shared by the escalation bounded context and the
application shell: structured logging and HTTP middleware.

DO NOT add escalation business logic to the shared kernel.
"""

__version__ = "1.0.0"
