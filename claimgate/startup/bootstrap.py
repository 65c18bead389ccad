"""
Engine bootstrap — build every collaborator once, fail fast on bad config.

Order:
  1. Settings loaded (environment) and validated
  2. CodeVault key derived from CLAIMGATE_SYM_KEY
  3. Claim store selected (memory / redis)
  4. Ownership evaluator, outbound HTTP client
  5. Plugin table registered
  6. EngineContext + ClaimService

On a missing or weak key → ConfigurationError, no engine is returned.
"""

import logging
from typing import Optional

import httpx

from claimgate.config.settings import Settings
from claimgate.engine.claim_service import ClaimService
from claimgate.engine.context import EngineContext, now_ms
from claimgate.engine.mutex_table import KeyedMutexTable
from claimgate.lookups import (
    InMemoryAccountBalances,
    InMemoryAddressLists,
    InMemoryBalanceIndex,
)
from claimgate.ownership.evaluator import AssetOwnershipEvaluator
from claimgate.plugins.http import OutboundHttp
from claimgate.plugins.registry import build_plugin_table
from claimgate.security.code_vault import PBKDF2_ITERATIONS, CodeVault
from claimgate.storage.claim_store import create_store

logger = logging.getLogger(__name__)


def build_engine(settings: Optional[Settings] = None, *,
                 store=None, lists=None, balances=None, balance_sink=None,
                 accounts=None, transport: Optional[httpx.BaseTransport] = None,
                 sleep=None, clock=now_ms,
                 kdf_iterations: int = PBKDF2_ITERATIONS) -> ClaimService:
    """Build a ready-to-use ClaimService.

    Collaborators not supplied are in-memory defaults. `transport` and
    `sleep` are passed to the outbound HTTP client (tests use
    httpx.MockTransport and a no-op sleep).

    Raises:
        ConfigurationError: if the settings are invalid.
    """
    settings = settings if settings is not None else Settings.from_env()
    settings.validate()

    vault = CodeVault(settings.sym_key, kdf_iterations)
    if store is None:
        store = create_store(settings.store_backend, settings.redis_url,
                             settings.commit_max_retries)

    lists = lists if lists is not None else InMemoryAddressLists()
    if balances is None:
        balances = InMemoryBalanceIndex()
    balance_sink = balance_sink if balance_sink is not None else balances
    accounts = accounts if accounts is not None else InMemoryAccountBalances()

    evaluator = AssetOwnershipEvaluator(balances, lists, clock)
    http_kwargs = {"transport": transport}
    if sleep is not None:
        http_kwargs["sleep"] = sleep
    http = OutboundHttp(settings.api_timeout_seconds, settings.api_max_retries,
                        settings.api_backoff_base, **http_kwargs)

    plugins = build_plugin_table(vault, lists, evaluator, accounts, http,
                                 store, settings.internal_query_prefix)

    ctx = EngineContext(
        settings=settings,
        vault=vault,
        store=store,
        plugins=plugins,
        evaluator=evaluator,
        lists=lists,
        balances=balances,
        balance_sink=balance_sink,
        accounts=accounts,
        http=http,
        mutexes=KeyedMutexTable(settings.mutex_table_size),
        clock=clock,
    )
    logger.info("[BOOTSTRAP] Engine ready: store=%s, %d plugins",
                settings.store_backend, len(plugins.ids()))
    return ClaimService(ctx)
