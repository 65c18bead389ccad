"""
AssetOwnershipEvaluator — recursive AND / OR / threshold ownership checks.

Rules:
  - AndGroup: children in order, first failure is the group's failure
  - OrGroup: children in order, first success wins, else aggregate failure
  - Requirement: every clause resolved to per-range amounts and compared
    against the inclusive mustOwnAmounts range
      * numMatchesForVerification unset / 0: any miss fails immediately
      * otherwise: count satisfied asset ids across all clauses, no early exit
  - "BitBadges Lists": list i becomes pseudo-badge i (1-based), amount 1 if
    the address is on the list, else 0
"""

import logging
import time
from typing import Any, Callable, List, Mapping, Optional, Sequence

from claimgate.errors import IntegrityError, ValidationFailure
from claimgate.lookups import AddressListLookup, BalanceLookup
from claimgate.ownership.ranges import (
    MAX_UINT64,
    Balance,
    UintRange,
    balances_from,
    get_balances_for_ids,
    remove_ranges,
    total_size,
)
from claimgate.ownership.requirements import (
    AndGroup,
    AssetClause,
    Node,
    OrGroup,
    Requirement,
    parse_requirement_tree,
)

logger = logging.getLogger(__name__)

BalancesSnapshot = Mapping[Any, Mapping[str, Sequence[Any]]]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _fmt_ranges(ranges: Sequence[UintRange]) -> str:
    return ",".join(f"{r.start}-{r.end}" for r in ranges)


class AssetOwnershipEvaluator:
    """Evaluates requirement trees against balance and list lookups."""

    def __init__(self, balances: BalanceLookup, lists: AddressListLookup,
                 clock: Callable[[], int] = _now_ms):
        self._balances = balances
        self._lists = lists
        self._clock = clock

    # ---------------------------------------------------------
    # PUBLIC API
    # ---------------------------------------------------------
    def evaluate(self, node: Any, address: str,
                 balances_snapshot: Optional[BalancesSnapshot] = None) -> None:
        """Raise ValidationFailure unless `address` satisfies `node`.

        Raises:
            IntegrityError: if any clause of the tree is malformed. Raised
                before any lookup is issued.
            ValidationFailure: if the ownership requirements are not met.
        """
        tree = parse_requirement_tree(node, self._clock())
        if balances_snapshot is not None:
            self._assert_snapshot_compatible(tree)
        self._evaluate(tree, address, balances_snapshot)

    def check(self, node: Any, address: str,
              balances_snapshot: Optional[BalancesSnapshot] = None) -> tuple:
        """Boolean form of evaluate(). Integrity errors still raise."""
        try:
            self.evaluate(node, address, balances_snapshot)
            return True, ""
        except ValidationFailure as exc:
            return False, exc.message

    # ---------------------------------------------------------
    # TREE WALK
    # ---------------------------------------------------------
    def _assert_snapshot_compatible(self, node: Node) -> None:
        if isinstance(node, (AndGroup, OrGroup)):
            for child in node.children:
                self._assert_snapshot_compatible(child)
            return
        for clause in node.assets:
            if clause.is_list:
                raise IntegrityError("Balances snapshot only supported for BitBadges badges")

    def _evaluate(self, node: Node, address: str,
                  snapshot: Optional[BalancesSnapshot]) -> None:
        if isinstance(node, AndGroup):
            for child in node.children:
                self._evaluate(child, address, snapshot)
            return

        if isinstance(node, OrGroup):
            for child in node.children:
                try:
                    self._evaluate(child, address, snapshot)
                    return
                except ValidationFailure as exc:
                    logger.debug("[OWNERSHIP] $or branch failed: %s", exc.message)
                    continue
            raise ValidationFailure("Address did not meet the asset ownership requirements.")

        self._evaluate_requirement(node, address, snapshot)

    def _evaluate_requirement(self, req: Requirement, address: str,
                              snapshot: Optional[BalancesSnapshot]) -> None:
        must_satisfy_all = not req.num_matches_for_verification
        num_to_satisfy = req.num_matches_for_verification
        if must_satisfy_all:
            num_to_satisfy = sum(total_size(self._requested_ids(c)) for c in req.assets)

        num_satisfied = 0
        for clause in req.assets:
            lo, hi = clause.must_own_amounts.start, clause.must_own_amounts.end
            failing: List[UintRange] = []
            for balance in self._resolve(clause, address, snapshot):
                if lo <= balance.amount <= hi:
                    continue
                if must_satisfy_all:
                    raise ValidationFailure(self._miss_message(clause, balance, address))
                failing.extend(balance.badge_ids)
            requested = self._requested_ids(clause)
            num_satisfied += total_size(remove_ranges(failing, requested))

        if num_satisfied < num_to_satisfy:
            raise ValidationFailure(
                f"Address {address} did not meet the ownership requirements.")

    # ---------------------------------------------------------
    # BALANCE RESOLUTION
    # ---------------------------------------------------------
    @staticmethod
    def _requested_ids(clause: AssetClause) -> List[UintRange]:
        if clause.is_list:
            return [UintRange(1, len(clause.asset_ids))] if clause.asset_ids else []
        return list(clause.asset_ids)

    def _resolve(self, clause: AssetClause, address: str,
                 snapshot: Optional[BalancesSnapshot]) -> List[Balance]:
        if clause.is_list:
            stored = []
            for idx, list_id in enumerate(clause.asset_ids, start=1):
                lst = self._lists.get_list(list_id)
                if lst is None:
                    raise ValidationFailure(f"Could not find list {list_id}")
                stored.append(Balance(
                    1 if lst.check_address(address) else 0,
                    [UintRange(idx, idx)],
                    [UintRange(1, MAX_UINT64)],
                ))
            return get_balances_for_ids(self._requested_ids(clause),
                                        clause.ownership_times, stored)

        if snapshot is not None:
            by_address = snapshot.get(str(clause.collection_id))
            if by_address is None:
                by_address = snapshot.get(clause.collection_id, {})
            stored = balances_from(by_address.get(address, []))
        else:
            found = self._balances.get_balances(clause.collection_id, address)
            if found is None:
                raise ValidationFailure(
                    f"Error fetching balance for collection {clause.collection_id} "
                    f"and address {address}")
            stored = list(found)

        return get_balances_for_ids(clause.asset_ids, clause.ownership_times, stored)

    @staticmethod
    def _miss_message(clause: AssetClause, balance: Balance, address: str) -> str:
        if clause.is_list:
            list_id = clause.asset_ids[balance.badge_ids[0].start - 1]
            return f"Address {address} does not meet the requirements for list {list_id}"
        ids = _fmt_ranges(balance.badge_ids)
        if balance.amount < clause.must_own_amounts.start:
            return (f"Address {address} does not own enough of IDs {ids} from collection "
                    f"{clause.collection_id} to meet minimum balance requirement of "
                    f"{clause.must_own_amounts.start}")
        return (f"Address {address} owns too much of IDs {ids} from collection "
                f"{clause.collection_id} to meet maximum balance requirement of "
                f"{clause.must_own_amounts.end}")
