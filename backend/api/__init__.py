"""
Tent Migrate API Routers
"""
from .migration import router as migration_router

__all__ = [
    "migration_router",
]
