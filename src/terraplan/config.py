"""Engine configuration from environment variables."""

import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Literal

from .exceptions import ValidationError
from .naming import (
    BACKEND_ENV_VAR,
    DEFAULT_STATE_DIR,
    DEFAULT_TABLE_NAME,
    ENDPOINT_URL_ENV_VAR,
    LOCK_TIMEOUT_ENV_VAR,
    LOCK_TTL_ENV_VAR,
    PARALLELISM_ENV_VAR,
    REFRESH_ENV_VAR,
    REGION_ENV_VAR,
    STATE_DIR_ENV_VAR,
    TABLE_ENV_VAR,
)

BackendKind = Literal["local", "memory", "dynamodb"]

BACKEND_KINDS: tuple[BackendKind, ...] = ("local", "memory", "dynamodb")
_BACKEND_CHOICES = f"must be one of {', '.join(BACKEND_KINDS)}"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class EngineConfig:
    """
    Settings for building an :class:`~terraplan.engine.Engine`.

    Attributes:
        backend: State backend kind
        state_dir: Root directory of the local backend
        table_name: DynamoDB table of the remote backend
        region: AWS region of the remote backend
        endpoint_url: Custom DynamoDB endpoint (LocalStack)
        parallelism: Maximum concurrent entries during apply (None = default)
        lock_timeout: Seconds to wait for a held lock (0 = fail fast)
        lock_ttl: Seconds after which a lock may be taken over (None = never)
        refresh: Refresh state from providers before planning
    """

    backend: BackendKind = "local"
    state_dir: str = DEFAULT_STATE_DIR
    table_name: str = DEFAULT_TABLE_NAME
    region: str | None = None
    endpoint_url: str | None = None
    parallelism: int | None = None
    lock_timeout: float = 0.0
    lock_ttl: float | None = None
    refresh: bool = True

    def __post_init__(self) -> None:
        if self.backend not in BACKEND_KINDS:
            raise ValidationError("backend", self.backend, _BACKEND_CHOICES)
        if self.parallelism is not None and self.parallelism < 1:
            raise ValidationError("parallelism", self.parallelism, "must be >= 1")
        if self.lock_timeout < 0:
            raise ValidationError("lock_timeout", self.lock_timeout, "must be >= 0")
        if self.lock_ttl is not None and self.lock_ttl <= 0:
            raise ValidationError("lock_ttl", self.lock_ttl, "must be > 0")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "EngineConfig":
        """
        Load settings from ``TERRAPLAN_*`` environment variables.

        Unset variables keep their defaults.

        Raises:
            ValidationError: If a variable has an invalid value
        """
        env = os.environ if environ is None else environ
        defaults = cls()

        backend = env.get(BACKEND_ENV_VAR, defaults.backend).strip().lower()
        if backend not in BACKEND_KINDS:
            raise ValidationError(BACKEND_ENV_VAR, backend, _BACKEND_CHOICES)

        return cls(
            backend=backend,  # type: ignore[arg-type]
            state_dir=env.get(STATE_DIR_ENV_VAR) or defaults.state_dir,
            table_name=env.get(TABLE_ENV_VAR) or defaults.table_name,
            region=env.get(REGION_ENV_VAR) or None,
            endpoint_url=env.get(ENDPOINT_URL_ENV_VAR) or None,
            parallelism=_parse_int(env, PARALLELISM_ENV_VAR),
            lock_timeout=_parse_float(env, LOCK_TIMEOUT_ENV_VAR) or defaults.lock_timeout,
            lock_ttl=_parse_float(env, LOCK_TTL_ENV_VAR),
            refresh=_parse_bool(env, REFRESH_ENV_VAR, defaults.refresh),
        )


def _parse_int(env: Mapping[str, str], name: str) -> int | None:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(name, raw, "must be an integer") from None


def _parse_float(env: Mapping[str, str], name: str) -> float | None:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return float(raw)
    except ValueError:
        raise ValidationError(name, raw, "must be a number") from None


def _parse_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValidationError(name, raw, "must be a boolean (true/false)")
