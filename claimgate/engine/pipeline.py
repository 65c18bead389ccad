"""
ValidationPipeline — runs a claim's plugins, in order, for one attempt.

  - strictly configured order; first failure aborts the rest
  - plugins get read-only copies of params and state, never the store
  - the claim-number assigner (numUses, or the instance named by the
    assign method) must yield a number that is < max_uses and unused
  - a numUses failure carrying the claim number of an earlier committed
    attempt with the same attempt id replays that reward for Code claims

Nothing here writes. The outcome is handed to the AtomicStateCommitter.
"""

import copy
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, List, Optional, Tuple

from claimgate.claims.models import NUM_USES_PLUGIN, ActionType, ClaimDocument, PluginInstance
from claimgate.claims.state_patch import CapturedValue
from claimgate.errors import ExternalDependencyError, ValidationFailure
from claimgate.plugins.base import ClaimRequest, PluginResult, ValidationContext
from claimgate.plugins.num_uses import CLAIM_NUMBER, CODE_IDX
from claimgate.plugins.registry import PluginTable

logger = logging.getLogger(__name__)


@dataclass
class PipelineOutcome:
    results: List[Tuple[PluginInstance, PluginResult]] = field(default_factory=list)
    claim_number: Any = None
    replayed: bool = False
    simulated: bool = False


def assigner_instance_id(claim: ClaimDocument) -> str:
    """Instance id of the plugin that hands out claim numbers."""
    method = claim.assign_method
    if method == CODE_IDX:
        codes = claim.first_plugin("codes")
        return codes.instance_id if codes else ""
    if any(p.instance_id == method for p in claim.plugins):
        return method
    num_uses = claim.num_uses_plugin()
    return num_uses.instance_id if num_uses else ""


def _used_claim_numbers(claim: ClaimDocument) -> set:
    num_uses = claim.num_uses_plugin()
    if num_uses is None:
        return set()
    users = claim.plugin_state(num_uses.instance_id).get("claimed_users") or {}
    return {n for numbers in users.values() for n in numbers}


class ValidationPipeline:

    def __init__(self, plugins: PluginTable, clock: Callable[[], int]):
        self._plugins = plugins
        self._clock = clock

    def run(self, claim: ClaimDocument, request: ClaimRequest,
            simulate: bool = False) -> PipelineOutcome:
        """Validate one attempt.

        Raises:
            ValidationFailure: with the first failing plugin's error.
        """
        now = self._clock()
        assigner_id = assigner_instance_id(claim)
        num_uses = claim.num_uses_plugin()
        curr_uses = claim.plugin_state(num_uses.instance_id).get("num_uses", 0) if num_uses else 0
        prior_attempt = claim.claim_attempts.get(request.attempt_id) if request.attempt_id else None
        frozen_state = MappingProxyType(copy.deepcopy(claim.state))

        only = request.specific_plugins_only if simulate else None
        outcome = PipelineOutcome(simulated=simulate)

        for instance in claim.plugins:
            if only is not None and instance.instance_id not in only:
                continue

            plugin = self._plugins.get(instance.plugin_id)
            if plugin is None:
                raise ValidationFailure(f"Plugin not found: {instance.plugin_id}")

            is_assigner = instance.instance_id == assigner_id
            context = ValidationContext(
                address=request.address,
                claim_id=claim.claim_id,
                attempt_id=request.attempt_id,
                instance_id=instance.instance_id,
                plugin_id=instance.plugin_id,
                simulate=simulate,
                created_at=claim.created_at,
                last_updated=claim.last_updated,
                assign_method=claim.assign_method,
                is_claim_number_assigner=is_assigner,
                max_uses=claim.max_uses,
                curr_uses=curr_uses,
                now_ms=now,
                prior_attempt=MappingProxyType(dict(prior_attempt)) if prior_attempt else None,
            )

            public = plugin.parse_public_params(instance.public_params)
            private = plugin.parse_private_params(
                plugin.decrypt_private_params(instance.private_params))
            prior_state = None
            if not plugin.metadata.stateless:
                prior_state = copy.deepcopy(claim.state.get(instance.instance_id)
                                            or plugin.initial_state())
            global_state = None if plugin.metadata.scoped else frozen_state

            try:
                result = plugin.validate(context, public, private,
                                         request.body_for(instance.instance_id),
                                         prior_state, global_state,
                                         plugin.select_identity(request))
            except ExternalDependencyError as exc:
                result = PluginResult.fail(str(exc))

            if not result.success:
                if (instance.plugin_id == NUM_USES_PLUGIN
                        and CLAIM_NUMBER in result.data
                        and claim.action.kind is ActionType.CODE
                        and not simulate):
                    logger.info("[PIPELINE] Replaying attempt %s on claim %s",
                                request.attempt_id, claim.claim_id)
                    return PipelineOutcome(claim_number=result.data[CLAIM_NUMBER], replayed=True)
                logger.info("[PIPELINE] Claim %s rejected by %s: %s",
                            claim.claim_id, instance.instance_id, result.error)
                raise ValidationFailure(result.error, plugin=plugin.metadata.name,
                                        data=result.data)

            if is_assigner:
                self._check_claim_number(claim, result.claim_number)
                outcome.claim_number = result.claim_number

            outcome.results.append((instance, result))

        if not simulate and outcome.claim_number is None:
            raise ValidationFailure("Claim number not found")
        return outcome

    @staticmethod
    def _check_claim_number(claim: ClaimDocument, number: Any) -> None:
        if number is None:
            raise ValidationFailure("Claim number not found")
        if isinstance(number, CapturedValue):
            # Assigned at commit; bounded by the numUses Below guard.
            return
        if isinstance(number, bool) or not isinstance(number, int) or number < 0:
            raise ValidationFailure(f"Invalid claim number: {number}")
        if claim.max_uses and number >= claim.max_uses:
            raise ValidationFailure(f"Invalid claim number: {number}")
        if number in _used_claim_numbers(claim):
            raise ValidationFailure(f"Claim number already used: {number}")
