"""
Escalation Module
=================

Bounded Context for ticket turn-around-time (TAT) tracking and escalation.

Responsibilities:
- Derive TAT snapshots (deadline, overdue flag, extension history)
- Reduce ticket collections to dashboard stats
- Decide which overdue tickets escalate and who receives them
- Run batch escalation passes from a cron trigger or the in-process scheduler
- Notify the new assignee via Slack
- Set and extend TAT on a ticket
"""

__version__ = "1.0.0"
