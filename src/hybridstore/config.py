"""Central configuration for the hybrid store.

All tunables live here with sensible defaults.  Values can be overridden
through environment variables prefixed with ``HYBRIDSTORE_`` (nested keys use
double underscores, e.g. ``HYBRIDSTORE_POOL__MAX_IDLE=2``).

Usage::

    from hybridstore.config import get_config

    cfg = get_config()
    print(cfg.db_path)
    print(cfg.pool.max_open)
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import TypeVar, get_type_hints

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Nested configuration sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class PoolConfig:
    """Bounds for the shared connection pool."""

    max_open: int = 10
    """Hard ceiling on connections open at once (idle plus checked out)."""

    max_idle: int = 10
    """Connections returned beyond this many idle ones are closed, not kept."""

    checkout_timeout: float = 30.0
    """Seconds a caller waits for a free connection before giving up."""


# ---------------------------------------------------------------------------
# Top-level configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class HybridStoreConfig:
    """Root configuration object for the hybrid store.

    ``db_path`` is stored as a :class:`~pathlib.Path` with ``~`` expanded.
    """

    db_path: Path = field(default_factory=lambda: Path("~/.hybridstore/hybrid.db"))
    busy_timeout_ms: int = 60_000
    memory_alias: str = "mem"
    cached_statements: int = 128
    report_batch_size: int = 256

    pool: PoolConfig = field(default_factory=PoolConfig)

    def __post_init__(self) -> None:
        # object.__setattr__ because the dataclass is frozen.
        object.__setattr__(self, "db_path", Path(self.db_path).expanduser())


# ---------------------------------------------------------------------------
# Environment-variable loader
# ---------------------------------------------------------------------------

_ENV_PREFIX = "HYBRIDSTORE_"
_NESTED_SEP = "__"


def _field_types(dc_type: type) -> dict[str, type]:
    # Annotations are strings here; evaluate them in the defining module.
    module = sys.modules.get(dc_type.__module__)
    return get_type_hints(dc_type, globalns=vars(module) if module else {})


def _coerce(value: str, target_type: type[T]) -> T:
    """Convert the raw environment string *value* to *target_type*."""
    if target_type is bool:
        return target_type(value.strip().lower() in ("1", "true", "yes", "on"))  # type: ignore[return-value]
    return target_type(value)  # type: ignore[return-value]


def _load_dataclass(dc_type: type[T], prefix: str) -> T:
    """Build *dc_type*, taking each field from ``<prefix><FIELD>`` when set.

    Fields that are themselves dataclasses are read from
    ``<prefix><FIELD>__<SUBFIELD>`` variables.
    """
    types = _field_types(dc_type)
    overrides: dict[str, object] = {}

    for f in fields(dc_type):  # type: ignore[arg-type]
        key = f"{prefix}{f.name}".upper()
        field_type = types[f.name]
        if is_dataclass(field_type):
            overrides[f.name] = _load_dataclass(field_type, key + _NESTED_SEP)
        elif key in os.environ:
            overrides[f.name] = _coerce(os.environ[key], field_type)

    return dc_type(**overrides)  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

_cached_config: HybridStoreConfig | None = None


def get_config(*, reload: bool = False) -> HybridStoreConfig:
    """Return the process-wide :class:`HybridStoreConfig`.

    Built from the defaults and ``HYBRIDSTORE_*`` variables on first use and
    kept until *reload* is passed.
    """
    global _cached_config  # noqa: PLW0603
    if reload or _cached_config is None:
        _cached_config = _load_dataclass(HybridStoreConfig, _ENV_PREFIX)
    return _cached_config
