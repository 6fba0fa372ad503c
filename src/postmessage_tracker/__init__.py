"""
postmessage-tracker: discovers cross-document message handlers, records
them per tab and keeps the records across navigation and restarts.
"""

from .blocklist import BlocklistManager, BlocklistMatcher, BlockMatch
from .bridge import BridgeEnvelope, BridgeReceiver, DirectBridge, QueueBridge, WebSocketBridgeClient
from .broker import InterceptionLayer
from .browser import Tab
from .context import BrowsingContext, MessageEvent
from .identity import clean_url, extract_source_url, listener_key
from .models import ListenerRecord, Sender
from .persistence import JsonFileBackend, MemoryBackend, PersistenceManager
from .service import AggregationService
from .settings import SettingsStore
from .signatures import ScriptFunction
from .unwrap import Unwrapper

__all__ = [
    "AggregationService",
    "BlockMatch",
    "BlocklistManager",
    "BlocklistMatcher",
    "BridgeEnvelope",
    "BridgeReceiver",
    "BrowsingContext",
    "DirectBridge",
    "InterceptionLayer",
    "JsonFileBackend",
    "ListenerRecord",
    "MemoryBackend",
    "MessageEvent",
    "PersistenceManager",
    "QueueBridge",
    "ScriptFunction",
    "Sender",
    "SettingsStore",
    "Tab",
    "Unwrapper",
    "WebSocketBridgeClient",
    "clean_url",
    "extract_source_url",
    "listener_key",
]
