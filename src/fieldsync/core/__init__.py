"""Core synchronization and lifecycle management.

This module contains the components that drive synchronization: the sync
orchestrator, the background scheduler, the shared gate that keeps runs
from overlapping, the event bus used to report progress, and the client
facade and service runner that wire everything together.
"""
