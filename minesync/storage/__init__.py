from ._schema import SCHEMA_VERSION, SCHEMA_SQL
from .accounts import AccountRepo
from .records import MiningRecordRepo
from .manager import StorageManager

__all__ = [
    "SCHEMA_VERSION",
    "SCHEMA_SQL",
    "AccountRepo",
    "MiningRecordRepo",
    "StorageManager",
]
