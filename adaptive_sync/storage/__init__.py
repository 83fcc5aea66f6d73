from .shops import UpsertSink, CsvShopStore
from .history import SyncHistoryRecorder, SqliteSyncHistory

__all__ = ["UpsertSink", "CsvShopStore", "SyncHistoryRecorder", "SqliteSyncHistory"]
