import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Hashable, List, Optional, Tuple


class KeyValueStore(ABC):
    """Process state the orchestrator reads and writes.

    The in-memory store never evicts; a deployment that needs bounded growth
    can pass in a store backed by an expiring cache instead.
    """

    @abstractmethod
    def get(self, key: Hashable, default: Any = None) -> Any:
        ...

    @abstractmethod
    def set(self, key: Hashable, value: Any) -> None:
        ...

    @abstractmethod
    def has(self, key: Hashable) -> bool:
        ...

    @abstractmethod
    def set_if_absent(self, key: Hashable, value: Any) -> bool:
        """Store ``value`` unless ``key`` exists. Returns True if it was stored."""

    @abstractmethod
    def items(self) -> List[Tuple[Hashable, Any]]:
        ...


class InMemoryStore(KeyValueStore):
    def __init__(self):
        self._data: Dict[Hashable, Any] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            return self._data.get(key, default)

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._data[key] = value

    def has(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._data

    def set_if_absent(self, key: Hashable, value: Any) -> bool:
        with self._lock:
            if key in self._data:
                return False
            self._data[key] = value
            return True

    def items(self) -> List[Tuple[Hashable, Any]]:
        with self._lock:
            return list(self._data.items())

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)
