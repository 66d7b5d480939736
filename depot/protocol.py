"""
Protocol definitions for depot's storage backends.

Defines the interface contracts the service facade depends on:
- RegistryProtocol: the partitioned key-value registry
  (SQLite locally, other engines via the ``depot.backends`` entry point)
- BlobStoreProtocol: opaque storage for file bytes
"""

from typing import Any, BinaryIO, Callable, Optional, Protocol, runtime_checkable


@runtime_checkable
class RegistryProtocol(Protocol):
    """
    Partitioned key-value registry with a global key index.

    Implemented by:
    - PartitionedRegistry (local SQLite)
    """

    # -- Write operations --

    def set(self, partition: str, namespace: str, key: str, value: dict[str, Any]) -> None: ...

    def insert(self, partition: str, namespace: str, key: str, value: dict[str, Any]) -> None: ...

    def delete(self, partition: str, namespace: str, key: str) -> None: ...

    def move(
        self,
        src: str,
        dst: str,
        namespace: str,
        key: str,
        value: Optional[dict[str, Any]] = None,
    ) -> None: ...

    def update(
        self,
        partition: Optional[str],
        namespace: str,
        key: str,
        fn: Callable[[dict[str, Any]], dict[str, Any]],
        place: Optional[Callable[[dict[str, Any]], str]] = None,
    ) -> tuple[str, dict[str, Any]]: ...

    # -- Read operations --

    def get(self, partition: str, namespace: str, key: str) -> dict[str, Any]: ...

    def locate(self, namespace: str, key: str) -> str: ...

    def list_namespace(self, partition: str, namespace: str) -> dict[str, dict[str, Any]]: ...

    def dump_namespace(self, namespace: str) -> dict[str, dict[str, dict[str, Any]]]: ...

    def list_partitions(self, namespace: Optional[str] = None) -> list[str]: ...

    def count(self, namespace: str, partition: Optional[str] = None) -> int: ...

    def close(self) -> None: ...


@runtime_checkable
class BlobStoreProtocol(Protocol):
    """
    Opaque storage for file bytes.

    Implemented by:
    - LocalBlobStore (a directory on disk)
    """

    def put(self, stream: BinaryIO, name: str) -> tuple[str, int]:
        """Store bytes under ``name``; return (handle, size in bytes)."""
        ...

    def open(self, handle: str) -> BinaryIO: ...

    def delete(self, handle: str) -> None: ...
