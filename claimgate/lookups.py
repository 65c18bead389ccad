"""
External collaborators consumed by the engine.

The engine never talks to the indexer, the list collection or the account
service directly; it goes through these narrow interfaces. In-memory
implementations back tests and single-process deployments.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence, Set, Tuple

from claimgate.ownership.ranges import Balance, add_balances

logger = logging.getLogger(__name__)


# =============================================================================
# ADDRESS LISTS
# =============================================================================

@dataclass
class AddressList:
    list_id: str
    addresses: List[str] = field(default_factory=list)
    allowlist: bool = True
    created_by: str = ""
    private: bool = False
    viewable_with_link: bool = False

    def check_address(self, address: str) -> bool:
        """Allowlists include listed addresses; blocklists include the rest."""
        listed = address in self.addresses
        return listed if self.allowlist else not listed

    @classmethod
    def from_dict(cls, d: dict) -> "AddressList":
        return cls(
            list_id=d.get("listId", d.get("list_id", "")),
            addresses=list(d.get("addresses", [])),
            allowlist=bool(d.get("allowlist", True)),
            created_by=d.get("createdBy", d.get("created_by", "")),
            private=bool(d.get("private", False)),
            viewable_with_link=bool(d.get("viewableWithLink",
                                          d.get("viewable_with_link", False))),
        )


class AddressListLookup(Protocol):
    def get_list(self, list_id: str) -> Optional[AddressList]: ...

    def add_address(self, list_id: str, address: str) -> bool: ...


class BalanceLookup(Protocol):
    def get_balances(self, collection_id: int, address: str) -> Optional[List[Balance]]: ...


class BalanceSink(Protocol):
    def add_balances(self, collection_id: int, address: str,
                     balances: Sequence[Balance], idempotency_key: str) -> bool: ...


class AccountBalanceLookup(Protocol):
    def get_account_balance(self, address: str) -> int: ...


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================

class InMemoryAddressLists:
    """Address-list collection keyed by list id."""

    def __init__(self, lists: Optional[Sequence[AddressList]] = None):
        self._lists: Dict[str, AddressList] = {}
        self._lock = threading.Lock()
        for lst in lists or []:
            self._lists[lst.list_id] = lst

    def put(self, lst: AddressList) -> None:
        with self._lock:
            self._lists[lst.list_id] = lst

    def get_list(self, list_id: str) -> Optional[AddressList]:
        return self._lists.get(list_id)

    def add_address(self, list_id: str, address: str) -> bool:
        """Append address once. Returns False when it was already present."""
        with self._lock:
            lst = self._lists.get(list_id)
            if lst is None:
                raise KeyError(f"List {list_id} not found")
            if address in lst.addresses:
                return False
            lst.addresses.append(address)
            return True


class InMemoryBalanceIndex:
    """Per-(collection, address) balance records plus an idempotent writer."""

    def __init__(self):
        self._balances: Dict[Tuple[int, str], List[Balance]] = {}
        self._applied: Set[str] = set()
        self._lock = threading.Lock()

    def set_balances(self, collection_id: int, address: str,
                     balances: Sequence[Balance]) -> None:
        with self._lock:
            self._balances[(int(collection_id), address)] = list(balances)

    def get_balances(self, collection_id: int, address: str) -> Optional[List[Balance]]:
        return self._balances.get((int(collection_id), address))

    def add_balances(self, collection_id: int, address: str,
                     balances: Sequence[Balance], idempotency_key: str) -> bool:
        with self._lock:
            if idempotency_key in self._applied:
                logger.info("[BALANCES] Skipping already-applied grant %s",
                            idempotency_key)
                return False
            key = (int(collection_id), address)
            self._balances[key] = add_balances(self._balances.get(key, []), balances)
            self._applied.add(idempotency_key)
            return True


class InMemoryAccountBalances:
    """Native-denomination account balances."""

    def __init__(self, balances: Optional[Dict[str, int]] = None):
        self._balances = dict(balances or {})

    def set_balance(self, address: str, amount: int) -> None:
        self._balances[address] = amount

    def get_account_balance(self, address: str) -> int:
        return self._balances.get(address, 0)
