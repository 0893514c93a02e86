from ...config import Settings
from .base import StoreBackend
from ._file import FileStore
from ._postgres import SqlStore


# Factory keeps server.py simple and constructor-agnostic. The backend is
# picked once here; nothing downstream branches on it.
def new_backend(settings: Settings) -> StoreBackend:
    if settings.store_backend == "pg":
        if not settings.database_url:
            raise RuntimeError("SqlStore(pg) requires DATABASE_URL")
        return SqlStore(
            settings.database_url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
        )
    return FileStore(settings.data_dir)


__all__ = ["StoreBackend", "FileStore", "SqlStore", "new_backend"]
