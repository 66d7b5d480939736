"""
Persona identity derivation.

A persona id is a name-based UUID (version 5) of the recovery code within the
operator's namespace. Nothing is stored to make this work: anyone holding the
code can recompute the id on any device, and instances configured with the
same namespace agree on it.
"""

import secrets
import string
import uuid
from typing import Callable, Union

from .errors import Conflict

RECOVERY_CODE_LENGTH = 8
RECOVERY_CODE_ALPHABET = string.ascii_uppercase + string.digits

# Collisions in a 36^8 space are rare; this only bounds a pathological loop
MAX_CODE_ATTEMPTS = 20


def parse_namespace(value: Union[str, uuid.UUID]) -> uuid.UUID:
    """Validate a configured namespace.

    Raises:
        ValueError: if value is not a UUID
    """
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value).strip())
    except ValueError:
        raise ValueError(f"Identity namespace must be a UUID, got {value!r}") from None


def derive_id(namespace: Union[str, uuid.UUID], recovery_code: str) -> str:
    """Derive the persona id for a recovery code."""
    return str(uuid.uuid5(parse_namespace(namespace), recovery_code))


def generate_recovery_code() -> str:
    """A fresh uppercase alphanumeric recovery code."""
    return "".join(
        secrets.choice(RECOVERY_CODE_ALPHABET) for _ in range(RECOVERY_CODE_LENGTH)
    )


def issue_recovery_code(
    is_taken: Callable[[str], bool],
    attempts: int = MAX_CODE_ATTEMPTS,
) -> str:
    """
    Generate a recovery code not yet held by any persona.

    Args:
        is_taken: Uniqueness check, normally PersonaDirectory.is_code_taken
        attempts: How many candidates to try

    Raises:
        Conflict: if every candidate collided
    """
    for _ in range(attempts):
        code = generate_recovery_code()
        if not is_taken(code):
            return code
    raise Conflict(f"Could not issue a unique recovery code in {attempts} attempts")
