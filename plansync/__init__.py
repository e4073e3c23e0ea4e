# plansync/__init__.py
"""
plansync: client-side synchronization engine for a multi-user planning tracker.

Keeps a local entity cache consistent with a shared backing store while
several sessions edit initiatives, release plans, epics, deliverables and
roadmap tasks concurrently.
"""

from plansync.engine import SyncEngine

__all__ = ["SyncEngine"]

__version__ = "0.1.0"
