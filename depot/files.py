"""
File registry.

One record per uploaded file, stored in the ``files`` namespace of its
owner's partition (the system partition for unowned files). Lookups by id go
through the registry's key index; listings either scan one partition (a
client's own files) or dump every partition (the admin view).
"""

import logging
from typing import Optional

from .directory import PersonaDirectory
from .errors import NotFound
from .protocol import BlobStoreProtocol, RegistryProtocol
from .registry import SYSTEM_PARTITION
from .types import FileListResult, FileRecord, ListFilesOptions

logger = logging.getLogger(__name__)

FILE_NAMESPACE = "files"


def partition_for(owner_id: Optional[str]) -> str:
    """The partition a file with this owner lives in."""
    return owner_id or SYSTEM_PARTITION


def _matches(record: FileRecord, needle: str) -> bool:
    return not needle or needle in record.original_name.casefold()


def _paginate(records: list, limit: int, offset: int) -> list:
    """Slice a page; offset past the end is an empty page, limit <= 0 is unbounded."""
    offset = max(offset, 0)
    if limit <= 0:
        return records[offset:]
    return records[offset:offset + limit]


class FileRegistry:
    """File metadata records partitioned by owner."""

    def __init__(self, registry: RegistryProtocol, directory: PersonaDirectory):
        self._registry = registry
        self._directory = directory

    def _with_owner_name(self, record: FileRecord) -> FileRecord:
        record.owner_name = self._directory.owner_name(record.owner_id)
        return record

    def _load(self, id: str) -> tuple[str, FileRecord]:
        partition = self._registry.locate(FILE_NAMESPACE, id)
        record = FileRecord.from_dict(self._registry.get(partition, FILE_NAMESPACE, id))
        return partition, record

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def create(self, record: FileRecord) -> FileRecord:
        """
        Store a new record in its owner's partition.

        Raises:
            Conflict: if a record with this id already exists anywhere
        """
        self._registry.insert(
            partition_for(record.owner_id), FILE_NAMESPACE, record.id, record.to_dict()
        )
        logger.debug("Saved file record %s (%s) owner=%s",
                     record.id, record.original_name, record.owner_id)
        return self._with_owner_name(record)

    def update(self, id: str, new_name: str, new_owner_id: str) -> FileRecord:
        """
        Rename a file and/or transfer it to another owner.

        The stored record is read, changed and, for an ownership change,
        relocated in one registry transaction: concurrent edits to other
        fields survive, and the record is never visible in the new partition
        with stale content.

        Raises:
            NotFound: if no record has this id
        """
        def apply(value: dict) -> dict:
            value["original_name"] = new_name
            value["owner_id"] = new_owner_id
            return value

        partition, value = self._registry.update(
            None, FILE_NAMESPACE, id, apply, place=lambda v: partition_for(v["owner_id"]),
        )
        logger.info("File %s updated, now in %s", id, partition)
        return self._with_owner_name(FileRecord.from_dict(value))

    def set_public(self, id: str, is_public: bool) -> FileRecord:
        """Flip the public flag in place; ownership is unchanged."""
        def apply(value: dict) -> dict:
            value["is_public"] = is_public
            return value

        _, value = self._registry.update(None, FILE_NAMESPACE, id, apply)
        return self._with_owner_name(FileRecord.from_dict(value))

    def delete(self, id: str, blobs: Optional[BlobStoreProtocol] = None) -> FileRecord:
        """
        Remove a record and release its blob.

        Blob release is best effort: a failure is logged and the record is
        still removed.

        Raises:
            NotFound: if no record has this id
        """
        partition, record = self._load(id)
        if blobs is not None and record.stored_path:
            try:
                blobs.delete(record.stored_path)
            except Exception as e:
                logger.error("Failed to delete blob %s for file %s: %s",
                             record.stored_path, id, e)
        self._registry.delete(partition, FILE_NAMESPACE, id)
        logger.info("File %s deleted from %s", id, partition)
        return record

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def get(self, id: str) -> FileRecord:
        """
        Raises:
            NotFound: if no record has this id
        """
        _, record = self._load(id)
        return self._with_owner_name(record)

    def find_by_link(self, token: str) -> FileRecord:
        """
        Resolve a public download token.

        Raises:
            NotFound: if no record carries the token
        """
        if token:
            for records in self._registry.dump_namespace(FILE_NAMESPACE).values():
                for value in records.values():
                    if value.get("download_link") == token:
                        return self._with_owner_name(FileRecord.from_dict(value))
        raise NotFound("File not found")

    def list(self, options: ListFilesOptions) -> FileListResult:
        """
        Filter, order and page file records.

        With ``owner_id`` set only that owner's partition is read; otherwise
        every partition is scanned (admin view). Results are newest first;
        the sort is stable, so equal upload times keep scan order.
        """
        if options.owner_id is not None:
            partition = partition_for(options.owner_id)
            values = list(self._registry.list_namespace(partition, FILE_NAMESPACE).values())
        else:
            values = [
                value
                for records in self._registry.dump_namespace(FILE_NAMESPACE).values()
                for value in records.values()
            ]

        needle = (options.search or "").casefold()
        matched = [
            record
            for record in (FileRecord.from_dict(v) for v in values)
            if _matches(record, needle)
        ]
        matched.sort(key=lambda r: r.upload_time, reverse=True)

        page = _paginate(matched, options.limit, options.offset)
        names: dict[str, str] = {}
        for record in page:
            if record.owner_id not in names:
                names[record.owner_id] = self._directory.owner_name(record.owner_id)
            record.owner_name = names[record.owner_id]
        return FileListResult(files=page, total=len(matched))
