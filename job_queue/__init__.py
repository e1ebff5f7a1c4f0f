"""
Job queue — the outbound dispatcher that drains outbox_jobs.

The queue itself is the outbox_jobs table; see database.store_base for the
claim and terminal-write contract.
"""
from job_queue.dispatcher import OutboundDispatcher, TickOutcome

__all__ = ["OutboundDispatcher", "TickOutcome"]
