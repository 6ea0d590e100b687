from .database import Base, DurableStore
from .persister import Persister, cache_file_name, log_file_name
from .service import PersistenceService

__all__ = [
    "Base",
    "DurableStore",
    "Persister",
    "PersistenceService",
    "cache_file_name",
    "log_file_name",
]
