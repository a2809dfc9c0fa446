"""Sandbox value objects."""

import re
from datetime import datetime, timezone
from typing import NewType

# Type-safe identifiers
ContainerName = NewType('ContainerName', str)

NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_-]*$")


def is_valid_name(name: str) -> bool:
    """Check a container name against the safe-identifier pattern.

    Args:
        name: Candidate name.

    Returns:
        True if valid.
    """
    return bool(NAME_PATTERN.match(name))


def create_container_name(name: str) -> ContainerName:
    """Create a validated container name.

    Args:
        name: Candidate name.

    Returns:
        Container name.

    Raises:
        InvalidContainerNameError: If the name is not safe.
    """
    from db_sandbox.domain.errors import InvalidContainerNameError

    if not is_valid_name(name):
        raise InvalidContainerNameError(name)
    return ContainerName(name)


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp used for record creation times."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
