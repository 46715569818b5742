# Database models
from fieldsync.models.database import (
    FormRecordRow,
    SpbRecordRow,
    KVEntry,
)
from fieldsync.models.sync_log import SyncLog

__all__ = [
    "FormRecordRow",
    "SpbRecordRow",
    "KVEntry",
    "SyncLog",
]
