"""
Persistent key/value store interface and an in-memory implementation.
"""

from typing import Protocol, runtime_checkable


class QuotaExceededError(Exception):
    """The store has no room for the write."""

    def __init__(self, key: str, required: int, capacity: int):
        self.key = key
        self.required = required
        self.capacity = capacity
        super().__init__(
            f"Store quota exceeded writing '{key}': {required} bytes needed, "
            f"capacity {capacity} bytes"
        )


@runtime_checkable
class PersistentStore(Protocol):
    """Key/value text store with finite capacity."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def remove(self, key: str) -> None: ...

    async def keys(self) -> list[str]: ...


class MemoryStore:
    """
    Dict-backed store, optionally bounded by ``capacity_bytes``.

    Sizes are the UTF-8 length of the stored values.
    """

    def __init__(self, capacity_bytes: int | None = None):
        self._data: dict[str, str] = {}
        self.capacity_bytes = capacity_bytes

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        if self.capacity_bytes is not None:
            used = sum(
                len(v.encode("utf-8")) for k, v in self._data.items() if k != key
            )
            required = used + len(value.encode("utf-8"))
            if required > self.capacity_bytes:
                raise QuotaExceededError(key, required, self.capacity_bytes)
        self._data[key] = value

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self) -> list[str]:
        return list(self._data)

    def __len__(self) -> int:
        return len(self._data)
