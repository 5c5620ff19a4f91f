"""
Base provider interface for remote resource clients.
One client wraps one (credential, resource category) pair.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class Page:
    """One page of export items"""
    items: List[Dict[str, Any]] = field(default_factory=list)
    next_cursor: Optional[str] = None  # None once the collection is exhausted

    @property
    def is_last(self) -> bool:
        return self.next_cursor is None


class BaseResourceClient(ABC):
    """Abstract paginated reader / single-item writer for one category"""

    category: str

    @abstractmethod
    async def list_page(self, cursor: Optional[str] = None) -> Page:
        """Read the page after ``cursor`` (first page when None)"""
        pass

    @abstractmethod
    async def create(self, item: Dict[str, Any], idempotency_key: Optional[str] = None) -> str:
        """Write one translated item, returning the id the remote assigned"""
        pass

    @abstractmethod
    async def close(self):
        """Clean up resources"""
        pass
