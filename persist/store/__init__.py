"""
Store module: Acquisition protocol, autosave and coordinated shutdown.
"""

from persist.store.store import Store, LoadAction
from persist.store.autosave import AutosaveScheduler
from persist.store.shutdown import ShutdownCoordinator

__all__ = [
    "Store",
    "LoadAction",
    "AutosaveScheduler",
    "ShutdownCoordinator",
]
