# -*- coding: utf-8 -*-
"""
Double Data-Entry Service Configuration

Centralized configuration for the double data-entry reconciliation engine
covering:
- Database connection defaults and pool sizing
- Per-form-instance lock timeout
- Dashboard list limits
- Second-entry snapshot parsing mode
- Provenance chain settings

All settings can be overridden via environment variables with the
``CD_DDE_`` prefix (e.g. ``CD_DDE_DASHBOARD_LIMIT``).

Example:
    >>> from clinicaldata.double_data_entry.config import get_config
    >>> cfg = get_config()
    >>> print(cfg.database_url, cfg.dashboard_limit)

Author: Clinical Data Platform Team
Date: October 2026
Status: Production Ready
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, Optional

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Environment variable prefix
# ---------------------------------------------------------------------------

_ENV_PREFIX = "CD_DDE_"


# ---------------------------------------------------------------------------
# DoubleDataEntryConfig
# ---------------------------------------------------------------------------


@dataclass
class DoubleDataEntryConfig:
    """Complete configuration for the double data-entry engine.

    Attributes:
        database_url: SQLAlchemy connection URL for the form instance,
            discrepancy and audit tables.
        log_level: Logging level applied to the ``clinicaldata`` logger by
            the service facade. Accepts DEBUG, INFO, WARNING, ERROR,
            CRITICAL.
        pool_size: Connection pool size for non-SQLite databases.
        echo_sql: Echo emitted SQL through the SQLAlchemy logger.
        lock_timeout_seconds: Maximum wait for the per-form-instance lock
            before ``LockTimeoutError`` is raised.
        dashboard_limit: Default maximum rows returned by each dashboard
            list.
        strict_snapshot_parsing: When True an unparseable second-entry
            snapshot raises ``StorageError`` instead of being read as an
            empty snapshot.
        enable_provenance: Chain-hash every audit record.
        genesis_hash: Anchor string for the provenance chain.
    """

    # -- Connections ---------------------------------------------------------
    database_url: str = "sqlite:///clinicaldata_dde.db"

    # -- Logging -------------------------------------------------------------
    log_level: str = "INFO"

    # -- Pool / SQL ----------------------------------------------------------
    pool_size: int = 5
    echo_sql: bool = False

    # -- Concurrency ---------------------------------------------------------
    lock_timeout_seconds: float = 30.0

    # -- Dashboard -----------------------------------------------------------
    dashboard_limit: int = 50

    # -- Snapshot parsing ----------------------------------------------------
    strict_snapshot_parsing: bool = False

    # -- Provenance ----------------------------------------------------------
    enable_provenance: bool = True
    genesis_hash: str = "clinicaldata-double-data-entry-genesis"

    # ------------------------------------------------------------------
    # Factory helpers
    # ------------------------------------------------------------------

    @classmethod
    def from_env(cls) -> DoubleDataEntryConfig:
        """Build a DoubleDataEntryConfig from environment variables.

        Every field can be overridden via ``CD_DDE_<FIELD_UPPER>``.
        Boolean values accept ``true/1/yes`` (case-insensitive).

        Returns:
            Populated DoubleDataEntryConfig instance.
        """
        prefix = _ENV_PREFIX

        def _env(name: str, default: Any = None) -> Optional[str]:
            return os.environ.get(f"{prefix}{name}", default)

        def _bool(name: str, default: bool) -> bool:
            val = _env(name)
            if val is None:
                return default
            return val.lower() in ("true", "1", "yes")

        def _int(name: str, default: int) -> int:
            val = _env(name)
            if val is None:
                return default
            try:
                return int(val)
            except ValueError:
                logger.warning(
                    "Invalid integer for %s%s=%s, using default %d",
                    prefix, name, val, default,
                )
                return default

        def _float(name: str, default: float) -> float:
            val = _env(name)
            if val is None:
                return default
            try:
                return float(val)
            except ValueError:
                logger.warning(
                    "Invalid float for %s%s=%s, using default %f",
                    prefix, name, val, default,
                )
                return default

        def _str(name: str, default: str) -> str:
            val = _env(name)
            if val is None:
                return default
            return val

        config = cls(
            database_url=_str("DATABASE_URL", cls.database_url),
            log_level=_str("LOG_LEVEL", cls.log_level),
            pool_size=_int("POOL_SIZE", cls.pool_size),
            echo_sql=_bool("ECHO_SQL", cls.echo_sql),
            lock_timeout_seconds=_float(
                "LOCK_TIMEOUT_SECONDS", cls.lock_timeout_seconds,
            ),
            dashboard_limit=_int("DASHBOARD_LIMIT", cls.dashboard_limit),
            strict_snapshot_parsing=_bool(
                "STRICT_SNAPSHOT_PARSING", cls.strict_snapshot_parsing,
            ),
            enable_provenance=_bool(
                "ENABLE_PROVENANCE", cls.enable_provenance,
            ),
            genesis_hash=_str("GENESIS_HASH", cls.genesis_hash),
        )

        logger.info(
            "DoubleDataEntryConfig loaded: dashboard_limit=%d, "
            "lock_timeout=%.1fs, strict_snapshot=%s, provenance=%s",
            config.dashboard_limit,
            config.lock_timeout_seconds,
            config.strict_snapshot_parsing,
            config.enable_provenance,
        )
        return config

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def __post_init__(self) -> None:
        """Validate all configuration constraints after initialization.

        Raises:
            ValueError: If any constraint is violated.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("database_url must not be empty")

        if self.pool_size < 1:
            errors.append("pool_size must be >= 1")

        if self.lock_timeout_seconds <= 0.0:
            errors.append("lock_timeout_seconds must be > 0.0")

        if self.dashboard_limit < 1:
            errors.append("dashboard_limit must be >= 1")

        # Log level
        valid_levels = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
        if self.log_level.upper() not in valid_levels:
            errors.append(
                f"log_level must be one of {valid_levels}, "
                f"got '{self.log_level}'"
            )

        # Genesis hash
        if not self.genesis_hash:
            errors.append("genesis_hash must not be empty")

        if errors:
            msg = "; ".join(errors)
            logger.error("DoubleDataEntryConfig validation failed: %s", msg)
            raise ValueError(f"DoubleDataEntryConfig validation failed: {msg}")

        logger.debug("DoubleDataEntryConfig validated successfully")


# ---------------------------------------------------------------------------
# Thread-safe singleton accessor
# ---------------------------------------------------------------------------

_config_instance: Optional[DoubleDataEntryConfig] = None
_config_lock = threading.Lock()


def get_config() -> DoubleDataEntryConfig:
    """Return the singleton DoubleDataEntryConfig, creating from env if needed.

    Returns:
        DoubleDataEntryConfig singleton instance.
    """
    global _config_instance
    if _config_instance is None:
        with _config_lock:
            if _config_instance is None:
                _config_instance = DoubleDataEntryConfig.from_env()
    return _config_instance


def set_config(config: DoubleDataEntryConfig) -> None:
    """Replace the singleton DoubleDataEntryConfig (useful for testing).

    Args:
        config: New configuration to install.
    """
    global _config_instance
    with _config_lock:
        _config_instance = config
    logger.info("DoubleDataEntryConfig replaced programmatically")


def reset_config() -> None:
    """Reset the singleton (primarily for test teardown)."""
    global _config_instance
    with _config_lock:
        _config_instance = None


__all__ = [
    "DoubleDataEntryConfig",
    "get_config",
    "set_config",
    "reset_config",
]
