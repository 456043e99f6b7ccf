"""Version tracking and compatibility checking for stratum state documents."""

from __future__ import annotations

import re
from dataclasses import dataclass

# Current state schema version - increment when the document layout changes
CURRENT_STATE_VERSION = "1.1.0"

_VERSION = re.compile(r"^(\d+)\.(\d+)\.(\d+)$")


def parse_version(version_str: str) -> tuple[int, int, int]:
    """
    Parse a ``major.minor.patch`` version tag.

    Raises:
        ValueError: If version string is invalid
    """
    match = _VERSION.match(version_str)
    if not match:
        raise ValueError(f"Invalid version string: {version_str}")
    return int(match.group(1)), int(match.group(2)), int(match.group(3))


@dataclass
class CompatibilityResult:
    """Result of a state version compatibility check."""

    is_compatible: bool
    message: str = ""


def check_state_compatibility(
    state_version: str,
    client_version: str = CURRENT_STATE_VERSION,
) -> CompatibilityResult:
    """
    Check whether this client can read and write a state document.

    Rules:
    - Major version mismatch: incompatible
    - State newer than the client (minor or patch): incompatible, the
      document may carry fields this client would drop on save
    - Older minor/patch: compatible

    Args:
        state_version: Version tag found in the stored document
        client_version: State schema version this client writes

    Returns:
        CompatibilityResult with compatibility status and details
    """
    try:
        client = parse_version(client_version)
    except ValueError:
        return CompatibilityResult(False, f"Invalid client version: {client_version}")

    try:
        state = parse_version(state_version)
    except ValueError:
        return CompatibilityResult(False, f"Invalid state version: {state_version}")

    if client[0] != state[0]:
        return CompatibilityResult(
            False,
            f"State major version {state[0]} != client major version {client[0]}.",
        )

    if state > client:
        return CompatibilityResult(
            False,
            f"State was written by a newer client (schema {state_version}). Please upgrade.",
        )

    return CompatibilityResult(True, "State version is compatible.")


def get_state_version() -> str:
    """Get the current state schema version."""
    return CURRENT_STATE_VERSION
