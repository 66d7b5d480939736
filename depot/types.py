"""
Data types for the persona directory and file registry.
"""

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

# Display label for files owned by the system partition
SYSTEM_OWNER_NAME = "Admin"

# Display label for files whose owning persona no longer exists
UNKNOWN_OWNER_NAME = "Unknown"


def unix_now() -> int:
    """Current time as whole unix seconds, the format of every stored timestamp."""
    return int(time.time())


@dataclass
class Persona:
    """
    A caller identity: anonymous client or administrator.

    Admin is a capability flag on the one persona type.
    """
    id: str
    name: str
    recovery_code: str
    last_active: int = 0
    is_admin: bool = False

    @property
    def kind(self) -> str:
        return "admin" if self.is_admin else "client"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Persona":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            recovery_code=data.get("recovery_code", ""),
            last_active=int(data.get("last_active", 0) or 0),
            is_admin=bool(data.get("is_admin", False)),
        )


@dataclass
class FileRecord:
    """
    Metadata for one uploaded file (not its bytes).

    ``owner_id`` empty means system-owned. ``owner_name`` is resolved at
    read time and never stored.
    """
    id: str
    original_name: str
    stored_path: str
    size: int
    upload_time: int
    owner_id: str = ""
    download_link: str = ""
    is_public: bool = False
    owner_name: Optional[str] = field(default=None, compare=False)

    def to_dict(self) -> dict[str, Any]:
        """Stored form: everything except the resolved owner name."""
        data = asdict(self)
        data.pop("owner_name")
        return data

    def to_listing(self) -> dict[str, Any]:
        """Fields surfaced to callers in listings and metadata lookups."""
        return {
            "id": self.id,
            "original_name": self.original_name,
            "size": self.size,
            "upload_time": self.upload_time,
            "owner_id": self.owner_id,
            "owner_name": self.owner_name,
            "download_link": self.download_link,
            "is_public": self.is_public,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FileRecord":
        # Records written before is_public existed read as private
        return cls(
            id=data["id"],
            original_name=data.get("original_name", ""),
            stored_path=data.get("stored_path", ""),
            size=int(data.get("size", 0) or 0),
            upload_time=int(data.get("upload_time", 0) or 0),
            owner_id=data.get("owner_id") or "",
            download_link=data.get("download_link") or "",
            is_public=bool(data.get("is_public", False)),
        )


@dataclass
class ListFilesOptions:
    """Filter and page window for FileRegistry.list()."""
    search: str = ""
    owner_id: Optional[str] = None
    limit: int = 0
    offset: int = 0


@dataclass
class FileListResult:
    """One page of files plus the total count of matches."""
    files: list[FileRecord]
    total: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "files": [f.to_listing() for f in self.files],
            "total": self.total,
        }


@dataclass(frozen=True)
class Caller:
    """Per-request caller context, already resolved by the transport layer."""
    persona_id: str = ""
