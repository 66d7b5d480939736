"""
Persona directory.

Persona records live in the system partition under the ``personas``
namespace, keyed by persona id. The directory is small (one record per
person using the service), so recovery-code lookup is a plain scan.
"""

import hmac
import logging
from typing import Callable, Optional

from .errors import Conflict, Forbidden, NotFound
from .protocol import RegistryProtocol
from .registry import SYSTEM_PARTITION
from .types import SYSTEM_OWNER_NAME, UNKNOWN_OWNER_NAME, Persona

logger = logging.getLogger(__name__)

PERSONA_NAMESPACE = "personas"


class PersonaDirectory:
    """Persona records, recovery lookup, and admin escalation."""

    def __init__(self, registry: RegistryProtocol):
        self._registry = registry

    def _update(self, id: str, fn: Callable[[Persona], None]) -> Persona:
        """Apply fn to the stored persona inside one registry transaction.

        Raises:
            NotFound: if no persona has this id
        """
        def apply(value: dict) -> dict:
            persona = Persona.from_dict(value)
            fn(persona)
            return persona.to_dict()

        if not id:
            raise NotFound("Persona id is empty")
        _, value = self._registry.update(SYSTEM_PARTITION, PERSONA_NAMESPACE, id, apply)
        return Persona.from_dict(value)

    def get_persona(self, id: str) -> Persona:
        """
        Raises:
            NotFound: if no persona has this id
        """
        if not id:
            raise NotFound("Persona id is empty")
        return Persona.from_dict(
            self._registry.get(SYSTEM_PARTITION, PERSONA_NAMESPACE, id)
        )

    def list_personas(self) -> list[Persona]:
        """All personas, ordered by display name."""
        records = self._registry.list_namespace(SYSTEM_PARTITION, PERSONA_NAMESPACE)
        personas = [Persona.from_dict(value) for value in records.values()]
        return sorted(personas, key=lambda p: p.name)

    def upsert_persona(
        self,
        id: str,
        name: str,
        recovery_code: str,
        last_active: int,
    ) -> Persona:
        """
        Create or update a persona.

        Preserves is_admin on update.
        """
        def apply(persona: Persona) -> None:
            persona.name = name
            persona.recovery_code = recovery_code
            persona.last_active = last_active

        try:
            return self._update(id, apply)
        except NotFound:
            pass
        persona = Persona(id=id, name=name, recovery_code=recovery_code, last_active=last_active)
        try:
            self._registry.insert(SYSTEM_PARTITION, PERSONA_NAMESPACE, id, persona.to_dict())
        except Conflict:
            # Created by someone else since the update attempt
            return self._update(id, apply)
        return persona

    def find_by_recovery_code(self, code: str) -> Persona:
        """
        Raises:
            NotFound: if no persona holds the code
        """
        if code:
            records = self._registry.list_namespace(SYSTEM_PARTITION, PERSONA_NAMESPACE)
            for value in records.values():
                if value.get("recovery_code") == code:
                    return Persona.from_dict(value)
        raise NotFound("Invalid recovery code")

    def is_code_taken(self, code: str) -> bool:
        try:
            self.find_by_recovery_code(code)
        except NotFound:
            return False
        return True

    def escalate(self, id: str, supplied_secret: str, configured_secret: str) -> Persona:
        """
        Grant admin to a persona holding the configured shared secret.

        An empty configured secret disables escalation entirely.

        Raises:
            Forbidden: if the secret is missing or wrong
            NotFound: if the persona does not exist
        """
        if not configured_secret or not hmac.compare_digest(
            (supplied_secret or "").encode(), configured_secret.encode()
        ):
            raise Forbidden("Invalid admin secret")

        def grant(persona: Persona) -> None:
            persona.is_admin = True

        persona = self._update(id, grant)
        logger.info("Persona %s escalated to admin", id)
        return persona

    def touch_last_active(self, id: str, now: int) -> None:
        """
        Record activity. Best effort: failures are logged and dropped.

        A persona that does not exist (or was deleted meanwhile) is left
        absent, never recreated.
        """
        def stamp(persona: Persona) -> None:
            persona.last_active = now

        try:
            self._update(id, stamp)
        except Exception as e:
            logger.debug("touch_last_active(%s) failed: %s", id, e)

    def delete_persona(self, id: str, caller_id: str) -> None:
        """
        Delete a persona.

        Raises:
            Forbidden: for the caller's own persona or the system persona
            NotFound: if no persona has this id
        """
        if id == SYSTEM_PARTITION:
            raise Forbidden("Cannot delete admin persona")
        if id == caller_id:
            raise Forbidden("Cannot delete your own persona")
        self._registry.delete(SYSTEM_PARTITION, PERSONA_NAMESPACE, id)
        logger.info("Persona %s deleted by %s", id, caller_id)

    def update_persona_full(
        self,
        id: str,
        name: str,
        recovery_code: str,
        is_admin: bool,
        caller_id: str,
    ) -> Persona:
        """
        Admin edit of every persona field.

        The id is left alone even when the recovery code changes, so the
        persona's files stay in their partition.

        Raises:
            Forbidden: if it would remove admin from the caller
            Conflict: if another persona already holds the recovery code
            NotFound: if no persona has this id
        """
        if id == caller_id and not is_admin:
            raise Forbidden("Cannot remove admin status from yourself")

        def apply(persona: Persona) -> None:
            # Runs inside the transaction, so check and write are atomic
            if recovery_code != persona.recovery_code:
                try:
                    holder = self.find_by_recovery_code(recovery_code)
                except NotFound:
                    holder = None
                if holder is not None and holder.id != id:
                    raise Conflict("Recovery code already in use")
            persona.name = name
            persona.recovery_code = recovery_code
            persona.is_admin = is_admin

        return self._update(id, apply)

    def owner_name(self, owner_id: Optional[str]) -> str:
        """Display name for a file owner; never raises NotFound."""
        if not owner_id or owner_id == SYSTEM_PARTITION:
            return SYSTEM_OWNER_NAME
        try:
            return self.get_persona(owner_id).name
        except NotFound:
            return UNKNOWN_OWNER_NAME
