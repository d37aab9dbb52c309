"""
Escalation Module
=================

Bounded Context for ticket turn-around-time (TAT) tracking and escalation.

Responsibilities:
- Compute acknowledgement and resolution deadlines in business hours
- Enforce the ticket status state machine and the TAT pause while a
  ticket waits on the student
- Match escalation rules and escalate tickets up the support hierarchy
- Detect SLA breaches, repeated TAT extensions, repeated reopening and
  negative feedback
- Run the periodic escalation sweep
"""

__version__ = "1.0.0"
