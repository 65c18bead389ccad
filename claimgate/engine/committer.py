"""
AtomicStateCommitter — one guarded write per successful attempt.

Collects every plugin's patches and guards, re-roots them under
state.<instance_id>, adds the claimant record for the numUses instance and
the attempt record, and hands a single ConditionalUpdate to the store.

Zero matches (guard failed, attempt id already recorded, claim deleted)
means another attempt won: RaceLost, nothing written.
"""

import logging
from typing import Callable

from claimgate.claims.models import ClaimDocument
from claimgate.claims.state_patch import (
    AppendUniquePatch,
    CapturedValue,
    ConditionalUpdate,
    escape_segment,
    join_path,
    scoped,
)
from claimgate.engine.pipeline import PipelineOutcome
from claimgate.errors import RaceLost, ValidationFailure
from claimgate.plugins.base import ClaimRequest

logger = logging.getLogger(__name__)


class AtomicStateCommitter:

    def __init__(self, store, clock: Callable[[], int]):
        self._store = store
        self._clock = clock

    def build_update(self, claim: ClaimDocument, request: ClaimRequest,
                     outcome: PipelineOutcome) -> ConditionalUpdate:
        update = ConditionalUpdate(
            attempt_id=request.attempt_id,
            attempt_record={
                "address": request.address,
                "claim_number": outcome.claim_number,
                "delivered": False,
                "created_at": self._clock(),
            },
        )
        for instance, result in outcome.results:
            update.guards.extend(scoped(g, instance.instance_id) for g in result.guards)
            update.patches.extend(scoped(p, instance.instance_id) for p in result.patches)

        num_uses = claim.num_uses_plugin()
        if num_uses is not None:
            try:
                user_key = escape_segment(request.address)
            except ValueError as exc:
                raise ValidationFailure(str(exc))
            update.patches.append(AppendUniquePatch(
                join_path(num_uses.instance_id, "claimed_users", user_key),
                outcome.claim_number,
            ))
        return update

    def commit(self, claim: ClaimDocument, request: ClaimRequest,
               outcome: PipelineOutcome) -> int:
        """Apply the attempt atomically and return its claim number.

        Raises:
            RaceLost: if the conditional update matched nothing.
        """
        update = self.build_update(claim, request, outcome)
        captures = self._store.conditional_update(claim.claim_id, update)
        if captures is None:
            logger.info("[COMMIT] Claim %s attempt %s lost the race",
                        claim.claim_id, request.attempt_id)
            raise RaceLost()

        number = outcome.claim_number
        if isinstance(number, CapturedValue):
            number = captures[number.name]
        logger.info("[COMMIT] Claim %s attempt %s committed as #%d",
                    claim.claim_id, request.attempt_id, number)
        return number
