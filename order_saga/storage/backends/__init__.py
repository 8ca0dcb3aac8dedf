from order_saga.storage.backends.memory import InMemoryHistoryLog
from order_saga.storage.backends.sqlite import SQLiteHistoryLog

__all__ = ["InMemoryHistoryLog", "SQLiteHistoryLog"]
