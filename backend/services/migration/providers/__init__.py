# Remote resource clients for migration endpoints

from .base import BaseResourceClient, Page
from .mac_auth import MacAuth
from .tent_provider import TentResourceClient, CATEGORY_ENDPOINTS

__all__ = [
    "BaseResourceClient",
    "Page",
    "MacAuth",
    "TentResourceClient",
    "CATEGORY_ENDPOINTS",
]
