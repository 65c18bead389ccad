"""
ActionExecutor — delivers the reward for a committed claim number.

    Code        code[claim_number] from the decrypted list or the seed chain
    SetBalance  incremented template (shifted by claim_number) or the
                claim_number-th manual balance set, written through the
                BalanceSink with idempotency key "<claim_id>:<claim_number>"
    AddToList   address appended to the list (no-op if already present)

Every action is safe to repeat for the same claim number, which is what
redeliver_pending() relies on after a crash between commit and delivery.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from claimgate.claims.models import ActionType, ClaimDocument
from claimgate.errors import ConfigurationError, ExternalDependencyError
from claimgate.lookups import AddressListLookup, BalanceSink
from claimgate.ownership.ranges import Balance, apply_increments, balances_from
from claimgate.security.code_vault import CodeVault, generate_codes

logger = logging.getLogger(__name__)


@dataclass
class Delivery:
    code: Optional[str] = None
    prev_codes: List[str] = field(default_factory=list)


class ActionExecutor:

    def __init__(self, vault: CodeVault, lists: AddressListLookup, balance_sink: BalanceSink):
        self._vault = vault
        self._lists = lists
        self._sink = balance_sink

    # ---------------------------------------------------------
    # CODES
    # ---------------------------------------------------------
    def codes_for(self, claim: ClaimDocument) -> List[str]:
        dist = claim.action.codes
        if dist is None:
            raise ConfigurationError("Claim does not distribute codes")
        if dist.seed_code:
            return generate_codes(self._vault.decrypt(dist.seed_code), claim.max_uses)
        return self._vault.decrypt_many(dist.codes)

    def code_at(self, claim: ClaimDocument, claim_number: int,
                codes: Optional[List[str]] = None) -> str:
        codes = codes if codes is not None else self.codes_for(claim)
        if not 0 <= claim_number < len(codes):
            raise ConfigurationError(f"No code for claim number {claim_number}")
        return codes[claim_number]

    def reserved_codes(self, claim: ClaimDocument, address: str) -> List[str]:
        codes = self.codes_for(claim)
        return [self.code_at(claim, n, codes) for n in claim.claimed_numbers(address)]

    # ---------------------------------------------------------
    # DELIVERY
    # ---------------------------------------------------------
    def deliver(self, claim: ClaimDocument, address: str, claim_number: int) -> Delivery:
        kind = claim.action.kind
        if kind is ActionType.CODE:
            codes = self.codes_for(claim)
            code = self.code_at(claim, claim_number, codes)
            prev = [self.code_at(claim, n, codes)
                    for n in claim.claimed_numbers(address) if n != claim_number]
            logger.info("[ACTION] Code #%d issued on claim %s", claim_number, claim.claim_id)
            return Delivery(code=code, prev_codes=prev)

        if kind is ActionType.SET_BALANCE:
            balances = self._balances_for(claim, claim_number)
            key = f"{claim.claim_id}:{claim_number}"
            applied = self._sink.add_balances(claim.collection_id, address, balances, key)
            logger.info("[ACTION] Balance grant %s %s", key,
                        "applied" if applied else "already applied")
            return Delivery()

        if kind is ActionType.ADD_TO_LIST:
            list_id = claim.action.add_to_list.list_id
            try:
                added = self._lists.add_address(list_id, address)
            except KeyError as exc:
                raise ExternalDependencyError(f"List {list_id} not found") from exc
            logger.info("[ACTION] Claim %s #%d %s list %s", claim.claim_id, claim_number,
                        "added to" if added else "already on", list_id)
            return Delivery()

        raise ConfigurationError("No action found")

    @staticmethod
    def _balances_for(claim: ClaimDocument, claim_number: int) -> List[Balance]:
        spec = claim.action.balances_to_set
        if spec.incremented_balances is not None:
            inc = spec.incremented_balances
            return apply_increments(balances_from(inc.start_balances),
                                    inc.increment_badge_ids_by,
                                    inc.increment_ownership_times_by,
                                    claim_number)
        if claim_number >= len(spec.manual_balances):
            raise ConfigurationError(f"No manual balances for claim number {claim_number}")
        return balances_from(spec.manual_balances[claim_number].balances)
