"""Record store interface for job records."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union


@dataclass
class ChangeEvent:
    """A row-level change notification from the store."""
    event: str  # "INSERT", "UPDATE" or "DELETE"
    record_id: Optional[str]
    row: Dict[str, Any] = field(default_factory=dict)


ChangeCallback = Callable[[ChangeEvent], Union[None, Awaitable[None]]]


class RecordStore(ABC):
    """Abstract interface over the shared `data_sources` table (remote or in-process)."""

    @abstractmethod
    async def insert(self, row: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a row and return it as stored, including its assigned id."""
        ...

    @abstractmethod
    async def select(
        self,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Return rows matching all equality filters."""
        ...

    @abstractmethod
    async def get(self, record_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def update(self, record_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Update fields of one row. Returns the updated row, or None if it no longer exists."""
        ...

    @abstractmethod
    async def delete(self, record_id: str) -> bool:
        ...

    @abstractmethod
    async def subscribe(self, callback: ChangeCallback) -> Any:
        """Register a change callback. Returns a token for unsubscribe()."""
        ...

    @abstractmethod
    async def unsubscribe(self, token: Any) -> None:
        ...

    async def close(self) -> None:
        """Release backend resources."""
        return None
