# HTTP adapter for the sync service
from .routes import router, get_sync_service

__all__ = ["router", "get_sync_service"]
