from intentflow.state.history import HistoryRecord, HistoryRecorder, KnowledgeLog
from intentflow.state.store import InboxItem, IntentStore, StateError

__all__ = [
    "HistoryRecord",
    "HistoryRecorder",
    "InboxItem",
    "IntentStore",
    "KnowledgeLog",
    "StateError",
]
