"""
Scheme finder: conversational context building and eligibility matching for
government benefit programs.

Exports the controller, the offline replay queue and the catalog loader.
"""

from .catalog import ProgramCatalog, load_catalog
from .config import Settings
from .controller import ConversationController
from .offline_queue import ActionResult, OfflineAction, OfflineActionQueue

__all__ = [
    "ProgramCatalog",
    "load_catalog",
    "Settings",
    "ConversationController",
    "OfflineAction",
    "OfflineActionQueue",
    "ActionResult",
]
