"""
Service facade for depot.

``Depot`` is the one object a transport layer (HTTP handlers, the CLI)
talks to. Each operation takes the already-resolved caller context, applies
the permission rules, delegates storage to the persona directory and file
registry, and returns plain dicts using the wire field names.
"""

import logging
import uuid
from pathlib import Path
from typing import Any, BinaryIO, Optional

from .backend import create_stores
from .config import DepotConfig, load_or_create_config
from .directory import PersonaDirectory
from .errors import Forbidden, InvalidRequest, NotFound
from .files import FileRegistry
from .identity import derive_id, issue_recovery_code
from .logging_config import configure_ops_log
from .types import Caller, FileRecord, ListFilesOptions, Persona, unix_now

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 8


def _service_version() -> str:
    from importlib.metadata import PackageNotFoundError, version
    try:
        return version("depot")
    except PackageNotFoundError:
        return "unknown"


def _persona_fields(persona: Persona) -> dict[str, Any]:
    return {
        "id": persona.id,
        "name": persona.name,
        "recovery_code": persona.recovery_code,
        "last_active": persona.last_active,
    }


def _require_caller(caller: Caller) -> str:
    if not caller.persona_id:
        raise InvalidRequest("Caller persona id is required")
    return caller.persona_id


class Depot:
    """
    Persona-scoped file sharing over a partitioned registry.

    Clients see and delete only their own files. An admin (a persona that
    escalated with the shared secret) sees every partition, reassigns file
    ownership, and manages personas.
    """

    def __init__(
        self,
        data_dir: Optional[Path] = None,
        *,
        config: Optional[DepotConfig] = None,
        ops_log: bool = True,
    ) -> None:
        """
        Args:
            data_dir: Data directory (defaults to DEPOT_DATA_DIR or ~/.depot)
            config: Preloaded configuration; data_dir is ignored when given
            ops_log: Attach the rotating operations log in the data directory
        """
        self._config = config if config is not None else load_or_create_config(data_dir)
        stores = create_stores(self._config)
        self._registry = stores.registry
        self._blobs = stores.blobs
        self._directory = PersonaDirectory(self._registry)
        self._files = FileRegistry(self._registry, self._directory)
        self._ops_handler = configure_ops_log(self._config.path) if ops_log else None

    @property
    def config(self) -> DepotConfig:
        return self._config

    @property
    def directory(self) -> PersonaDirectory:
        return self._directory

    @property
    def files(self) -> FileRegistry:
        return self._files

    def is_admin(self, caller: Caller) -> bool:
        if not caller.persona_id:
            return False
        try:
            return self._directory.get_persona(caller.persona_id).is_admin
        except NotFound:
            return False

    def _require_admin(self, caller: Caller) -> str:
        if not self.is_admin(caller):
            raise Forbidden("Admin access required")
        return caller.persona_id

    # -------------------------------------------------------------------------
    # Persona
    # -------------------------------------------------------------------------

    def get_persona(self, caller: Caller) -> dict[str, Any]:
        """
        Describe the caller's persona and touch its last-active time.

        An unknown or empty caller is an anonymous client, not an error.
        """
        result: dict[str, Any] = {
            "persona": "client",
            "id": caller.persona_id,
            "name": "",
            "recovery_code": "",
            "last_active": 0,
            "version": _service_version(),
        }
        if caller.persona_id:
            try:
                persona = self._directory.get_persona(caller.persona_id)
            except NotFound:
                return result
            now = unix_now()
            self._directory.touch_last_active(persona.id, now)
            persona.last_active = now
            result.update(_persona_fields(persona))
            result["persona"] = persona.kind
        return result

    def set_name(self, caller: Caller, name: str) -> dict[str, Any]:
        """
        Save the caller's display name, creating the persona if needed.

        A caller without a recovery code is issued one, and its persona id
        becomes the one derived from that code. The returned id replaces
        whatever the client held before.
        """
        _require_caller(caller)
        if not name:
            raise InvalidRequest("Name is required")
        try:
            existing: Optional[Persona] = self._directory.get_persona(caller.persona_id)
        except NotFound:
            existing = None

        if existing is not None and existing.recovery_code:
            persona_id, recovery_code = existing.id, existing.recovery_code
        else:
            recovery_code = issue_recovery_code(self._directory.is_code_taken)
            persona_id = derive_id(self._config.namespace, recovery_code)
        self._directory.upsert_persona(persona_id, name, recovery_code, unix_now())
        return {"status": "success", "id": persona_id, "recovery_code": recovery_code}

    def recover(self, code: str) -> dict[str, Any]:
        """
        Look a persona up by recovery code.

        Raises:
            NotFound: for an unknown code
        """
        if not code:
            raise InvalidRequest("Recovery code is required")
        # The stored id, not a re-derived one: an admin may have reassigned
        # the code, and the persona's files live under the original id
        persona = self._directory.find_by_recovery_code(code.strip())
        return {
            "persona": persona.kind,
            "id": persona.id,
            "name": persona.name,
            "recovery_code": persona.recovery_code,
        }

    def activate_admin(self, caller: Caller, secret: str) -> dict[str, Any]:
        """
        Escalate the caller to admin with the configured shared secret.

        Raises:
            Forbidden: for a wrong secret or when no secret is configured
        """
        persona_id = _require_caller(caller)
        self._directory.escalate(persona_id, secret, self._config.admin_secret)
        return {"status": "success"}

    # -------------------------------------------------------------------------
    # Files
    # -------------------------------------------------------------------------

    def upload(self, caller: Caller, filename: str, stream: BinaryIO) -> dict[str, Any]:
        """Store bytes and register a file owned by the caller."""
        owner_id = _require_caller(caller)
        if not filename:
            raise InvalidRequest("Filename is required")
        file_id = str(uuid.uuid4())
        stored_path, size = self._blobs.put(stream, file_id)

        record = FileRecord(
            id=file_id,
            original_name=Path(filename).name,
            stored_path=stored_path,
            size=size,
            upload_time=unix_now(),
            owner_id=owner_id,
            download_link=str(uuid.uuid4()),
        )
        try:
            record = self._files.create(record)
        except Exception:
            try:
                self._blobs.delete(stored_path)
            except OSError as e:
                logger.warning("Failed to release blob %s after failed upload: %s", stored_path, e)
            raise
        logger.info("Uploaded %s (%s, %d bytes) for %s",
                    record.id, record.original_name, record.size, owner_id)
        return record.to_listing()

    def list_files(
        self,
        caller: Caller,
        *,
        search: str = "",
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> dict[str, Any]:
        """
        One page of files visible to the caller.

        Admins see every partition; clients only their own.
        """
        page = max(page, 1)
        if limit < 1:
            limit = DEFAULT_PAGE_SIZE
        options = ListFilesOptions(search=search, limit=limit, offset=(page - 1) * limit)

        admin = self.is_admin(caller)
        if not admin:
            options.owner_id = _require_caller(caller)

        logger.debug("list_files admin=%s caller=%s search=%r page=%d limit=%d",
                     admin, caller.persona_id, search, page, limit)
        return self._files.list(options).to_dict()

    def get_file(self, id: str) -> dict[str, Any]:
        """
        Raises:
            NotFound: for an unknown id
        """
        return self._files.get(id).to_listing()

    def update_file(
        self,
        caller: Caller,
        id: str,
        *,
        original_name: str,
        owner_id: str,
    ) -> dict[str, Any]:
        """Rename and/or reassign a file. Admin only."""
        self._require_admin(caller)
        if not original_name:
            raise InvalidRequest("original_name is required")
        return self._files.update(id, original_name, owner_id).to_listing()

    def set_public(self, caller: Caller, id: str, is_public: bool) -> dict[str, Any]:
        """Flag a file public or private. Owner or admin."""
        record = self._files.get(id)
        if not self.is_admin(caller) and record.owner_id != caller.persona_id:
            raise Forbidden("You don't have permission to change this file")
        return self._files.set_public(id, is_public).to_listing()

    def delete_file(self, caller: Caller, id: str) -> dict[str, Any]:
        """
        Delete a file and release its bytes. Owner or admin.

        Raises:
            NotFound: for an unknown id
            Forbidden: when the caller neither owns the file nor is admin
        """
        record = self._files.get(id)
        if not self.is_admin(caller) and record.owner_id != caller.persona_id:
            raise Forbidden("You don't have permission to delete this file")
        self._files.delete(id, self._blobs)
        return {"status": "success"}

    def open_download(self, id_or_link: str) -> tuple[dict[str, Any], BinaryIO]:
        """
        Resolve a file by id or public download token and open its bytes.

        Raises:
            NotFound: when neither matches, or the bytes are gone
        """
        try:
            record = self._files.get(id_or_link)
        except NotFound:
            record = self._files.find_by_link(id_or_link)
        try:
            stream = self._blobs.open(record.stored_path)
        except (OSError, ValueError) as e:
            raise NotFound(f"File not found: {e}") from e
        return record.to_listing(), stream

    # -------------------------------------------------------------------------
    # Persona administration
    # -------------------------------------------------------------------------

    def list_personas(self, caller: Caller) -> list[dict[str, Any]]:
        """Every persona, by name. Admin only."""
        self._require_admin(caller)
        return [
            {**_persona_fields(p), "is_admin": p.is_admin}
            for p in self._directory.list_personas()
        ]

    def update_persona(
        self,
        caller: Caller,
        id: str,
        *,
        name: str,
        recovery_code: str,
        is_admin: bool,
    ) -> dict[str, Any]:
        """Edit a persona. Admin only; an admin cannot demote itself."""
        caller_id = self._require_admin(caller)
        if not name or not recovery_code:
            raise InvalidRequest("name and recovery_code are required")
        self._directory.update_persona_full(id, name, recovery_code, is_admin, caller_id)
        return {"status": "success"}

    def delete_persona(self, caller: Caller, id: str) -> dict[str, Any]:
        """Delete a persona. Admin only; an admin cannot delete itself."""
        caller_id = self._require_admin(caller)
        self._directory.delete_persona(id, caller_id)
        return {"status": "success"}

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        if self._ops_handler is not None:
            logging.getLogger("depot").removeHandler(self._ops_handler)
            self._ops_handler.close()
            self._ops_handler = None
        self._registry.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
