"""
claimgate Settings — environment-backed engine configuration

All values are read exactly once, when the engine is built. Nothing in the
engine reads os.environ after startup.

Required:
  CLAIMGATE_SYM_KEY   symmetric secret for private plugin params (>= 16 chars)

Optional:
  CLAIMGATE_STORE_BACKEND        "memory" (default) or "redis"
  REDIS_URL                      redis://localhost:6379/0
  CLAIMGATE_COMMIT_MAX_RETRIES   optimistic commit retries (redis backend)
  CLAIMGATE_API_TIMEOUT_SECONDS  outbound HTTP timeout
  CLAIMGATE_API_MAX_RETRIES      transport-error retries for outbound calls
  CLAIMGATE_API_BACKOFF_BASE     exponential backoff base, seconds
  CLAIMGATE_MUTEX_TABLE_SIZE     cap of the keyed mutex table
  CLAIMGATE_INTERNAL_QUERY_PREFIX  URI prefix routed to internal handlers
"""

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from claimgate.errors import ConfigurationError

logger = logging.getLogger(__name__)

MIN_SYM_KEY_LENGTH = 16
STORE_BACKENDS = ("memory", "redis")
DEFAULT_INTERNAL_QUERY_PREFIX = "https://api.bitbadges.io/api/v0/integrations/query"


# =============================================================================
# HELPERS
# =============================================================================

def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


def _check_secret(value: str, name: str = "CLAIMGATE_SYM_KEY") -> Tuple[bool, str]:
    """Check a secret is present and strong enough."""
    if not value:
        return False, f"{name} is not set"
    if len(value) < MIN_SYM_KEY_LENGTH:
        return False, (f"{name} is too short ({len(value)} chars, "
                       f"min {MIN_SYM_KEY_LENGTH})")
    return True, f"{name} OK ({len(value)} chars)"


# =============================================================================
# SETTINGS
# =============================================================================

@dataclass(frozen=True)
class Settings:
    sym_key: str
    store_backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    commit_max_retries: int = 64
    api_timeout_seconds: float = 10.0
    api_max_retries: int = 2
    api_backoff_base: float = 0.25
    mutex_table_size: int = 1000
    internal_query_prefix: str = DEFAULT_INTERNAL_QUERY_PREFIX

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        return cls(
            sym_key=env.get("CLAIMGATE_SYM_KEY", ""),
            store_backend=env.get("CLAIMGATE_STORE_BACKEND", "memory").lower(),
            redis_url=env.get("REDIS_URL", "redis://localhost:6379/0"),
            commit_max_retries=_int(env, "CLAIMGATE_COMMIT_MAX_RETRIES", 64),
            api_timeout_seconds=_float(env, "CLAIMGATE_API_TIMEOUT_SECONDS", 10.0),
            api_max_retries=_int(env, "CLAIMGATE_API_MAX_RETRIES", 2),
            api_backoff_base=_float(env, "CLAIMGATE_API_BACKOFF_BASE", 0.25),
            mutex_table_size=_int(env, "CLAIMGATE_MUTEX_TABLE_SIZE", 1000),
            internal_query_prefix=env.get(
                "CLAIMGATE_INTERNAL_QUERY_PREFIX", DEFAULT_INTERNAL_QUERY_PREFIX),
        )

    def validate(self) -> None:
        """Fail fast on anything the engine cannot run without.

        Raises:
            ConfigurationError: on the first invalid setting.
        """
        ok, detail = _check_secret(self.sym_key)
        if not ok:
            raise ConfigurationError(f"No symmetric key found: {detail}")
        if self.store_backend not in STORE_BACKENDS:
            raise ConfigurationError(
                f"CLAIMGATE_STORE_BACKEND must be one of {STORE_BACKENDS}, "
                f"got {self.store_backend!r}")
        if self.api_timeout_seconds <= 0:
            raise ConfigurationError("CLAIMGATE_API_TIMEOUT_SECONDS must be > 0")
        if self.api_max_retries < 0 or self.commit_max_retries < 1:
            raise ConfigurationError("Retry counts must be non-negative "
                                     "(commit retries >= 1)")
        if self.mutex_table_size < 1:
            raise ConfigurationError("CLAIMGATE_MUTEX_TABLE_SIZE must be >= 1")
        logger.info("[CONFIG] %s, store=%s", detail, self.store_backend)
