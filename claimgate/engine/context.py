"""
EngineContext — every collaborator the engine needs, built once.

Holds the vault (and therefore the secret key), the store, the plugin table
and the mutex table. Components receive the context, or the pieces of it
they need, instead of reading process state.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable

from claimgate.config.settings import Settings
from claimgate.engine.mutex_table import KeyedMutexTable
from claimgate.lookups import AccountBalanceLookup, AddressListLookup, BalanceLookup, BalanceSink
from claimgate.ownership.evaluator import AssetOwnershipEvaluator
from claimgate.plugins.http import OutboundHttp
from claimgate.plugins.registry import PluginTable
from claimgate.security.code_vault import CodeVault


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class EngineContext:
    settings: Settings
    vault: CodeVault
    store: Any
    plugins: PluginTable
    evaluator: AssetOwnershipEvaluator
    lists: AddressListLookup
    balances: BalanceLookup
    balance_sink: BalanceSink
    accounts: AccountBalanceLookup
    http: OutboundHttp
    mutexes: KeyedMutexTable
    clock: Callable[[], int] = field(default=now_ms)

    def close(self) -> None:
        self.http.close()
