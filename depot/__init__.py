"""
depot: persona-scoped self-hosted file sharing.

Callers act under personas recovered from a short code, never a password.
File metadata lives in a registry partitioned by owning persona; admins see
across every partition.
"""

from .api import Depot
from .directory import PersonaDirectory
from .errors import Conflict, DepotError, Forbidden, InvalidRequest, NotFound, StorageFailure
from .files import FileRegistry
from .identity import derive_id, generate_recovery_code
from .registry import SYSTEM_PARTITION, PartitionedRegistry
from .types import Caller, FileListResult, FileRecord, ListFilesOptions, Persona

__all__ = [
    "Caller",
    "Conflict",
    "Depot",
    "DepotError",
    "FileListResult",
    "FileRecord",
    "FileRegistry",
    "Forbidden",
    "InvalidRequest",
    "ListFilesOptions",
    "NotFound",
    "PartitionedRegistry",
    "Persona",
    "PersonaDirectory",
    "StorageFailure",
    "SYSTEM_PARTITION",
    "derive_id",
    "generate_recovery_code",
]
