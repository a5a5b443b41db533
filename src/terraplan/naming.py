"""Workspace naming and environment defaults.

Workspace names end up in file paths (local backend) and DynamoDB keys
(remote backend), so they are restricted to a conservative character set:
- Alphanumeric characters, hyphens, underscores and periods
- Must start with a letter or digit
- Maximum 90 characters
"""

import os
import re

from .exceptions import ValidationError

DEFAULT_WORKSPACE = "default"
"""The workspace that always exists and cannot be deleted."""

WORKSPACE_ENV_VAR = "TERRAPLAN_WORKSPACE"
"""Environment variable for overriding the workspace selected by callers."""

BACKEND_ENV_VAR = "TERRAPLAN_BACKEND"
STATE_DIR_ENV_VAR = "TERRAPLAN_STATE_DIR"
TABLE_ENV_VAR = "TERRAPLAN_TABLE"
REGION_ENV_VAR = "TERRAPLAN_REGION"
ENDPOINT_URL_ENV_VAR = "TERRAPLAN_ENDPOINT_URL"
PARALLELISM_ENV_VAR = "TERRAPLAN_PARALLELISM"
LOCK_TIMEOUT_ENV_VAR = "TERRAPLAN_LOCK_TIMEOUT"
LOCK_TTL_ENV_VAR = "TERRAPLAN_LOCK_TTL"
REFRESH_ENV_VAR = "TERRAPLAN_REFRESH"

DEFAULT_STATE_DIR = ".terraplan"
DEFAULT_TABLE_NAME = "terraplan-state"

MAX_WORKSPACE_LENGTH = 90

WORKSPACE_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def validate_workspace_name(name: str) -> None:
    """
    Validate a workspace name.

    Args:
        name: The user-provided workspace name

    Raises:
        ValidationError: If the name is invalid
    """
    if not name:
        raise ValidationError("workspace", name, "Name cannot be empty")

    if "/" in name or "\\" in name:
        raise ValidationError("workspace", name, "Contains a path separator.")
    if ".." in name:
        raise ValidationError("workspace", name, "Contains '..'.")
    if not WORKSPACE_PATTERN.match(name):
        raise ValidationError(
            "workspace",
            name,
            "Must start with a letter or digit and contain only alphanumeric "
            "characters, hyphens, underscores and periods.",
        )

    if len(name) > MAX_WORKSPACE_LENGTH:
        raise ValidationError(
            "workspace",
            name,
            f"Too long. Name exceeds {MAX_WORKSPACE_LENGTH} character limit.",
        )


def resolve_workspace_name(workspace: str | None) -> str:
    """Resolve workspace name from explicit arg, env var, or default.

    Resolution order: ``workspace`` arg → ``TERRAPLAN_WORKSPACE`` env var → ``"default"``.

    Args:
        workspace: Explicit workspace name, or ``None`` to use env/default.

    Returns:
        Validated workspace name.
    """
    name = workspace or os.environ.get(WORKSPACE_ENV_VAR) or DEFAULT_WORKSPACE
    validate_workspace_name(name)
    return name
