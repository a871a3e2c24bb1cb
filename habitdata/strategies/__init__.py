from habitdata.strategies.compression import GzipCompressor
from habitdata.strategies.formatting import RecordFormatter
from habitdata.strategies.notifier import LoggingNotifier
from habitdata.strategies.records import SqlRecordStore
from habitdata.strategies.storage import LocalStorageClient

__all__ = [
    "GzipCompressor",
    "LocalStorageClient",
    "LoggingNotifier",
    "RecordFormatter",
    "SqlRecordStore",
]
