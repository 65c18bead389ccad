"""
numUses — global and per-address usage limits, claim number assignment.

State (under state.<instance_id>):
    num_uses        total successful claims
    claimed_users   {escaped address: [claim numbers]}

The plugin only proposes patches and guards. The Below / LengthBelow guards
are re-checked by the store inside the atomic update, so a concurrent winner
turns the loser's commit into a RaceLost instead of an over-redemption.

Assign methods:
    firstComeFirstServe  claim number = num_uses before the increment
    codeIdx              numbers come from the codes plugin; increment only
"""

import logging

from pydantic import Field, field_validator

from claimgate.claims.state_patch import (
    Below,
    CapturedValue,
    IncrementPatch,
    LengthBelow,
    escape_segment,
    join_path,
)
from claimgate.plugins.base import ClaimPlugin, Params, PluginMetadata, PluginResult

logger = logging.getLogger(__name__)

FIRST_COME_FIRST_SERVE = "firstComeFirstServe"
CODE_IDX = "codeIdx"
CLAIM_NUMBER = "claim_number"


class NumUsesParams(Params):
    max_uses: int = Field(0, ge=0)
    max_uses_per_address: int = Field(0, ge=0)
    assign_method: str = FIRST_COME_FIRST_SERVE

    @field_validator("assign_method")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("assign_method must not be empty")
        return v


class NumUsesPlugin(ClaimPlugin):
    plugin_id = "numUses"
    metadata = PluginMetadata(
        name="One Time Use",
        description="Limits total and per-address claims",
        stateless=False,
        scoped=True,
        duplicates_allowed=False,
    )
    public_params_model = NumUsesParams
    default_state = {"claimed_users": {}, "num_uses": 0}

    def get_public_state(self, state):
        return {
            "claimed_users": dict(state.get("claimed_users") or {}),
            "num_uses": state.get("num_uses", 0),
        }

    def get_blank_public_state(self):
        return {"claimed_users": {}, "num_uses": 0}

    def validate(self, context, public_params, private_params, custom_body,
                 prior_state, global_state, identity):
        state = prior_state or self.initial_state()
        num_uses = state.get("num_uses", 0)

        prior = context.prior_attempt
        if prior is not None:
            # Same attempt id seen before: hand back its claim number so the
            # caller can return the reward it already earned.
            if prior.get("address") == context.address and prior.get(CLAIM_NUMBER) is not None:
                return PluginResult.fail("Already claimed",
                                         data={CLAIM_NUMBER: prior[CLAIM_NUMBER]})
            return PluginResult.fail("Claim attempt id already used")

        max_uses = public_params.max_uses
        if max_uses and num_uses >= max_uses:
            return PluginResult.fail("Max uses exceeded")

        try:
            user_key = escape_segment(context.address)
        except ValueError as exc:
            return PluginResult.fail(str(exc))

        claimed = (state.get("claimed_users") or {}).get(user_key, [])
        per_address = public_params.max_uses_per_address
        if per_address and len(claimed) >= per_address:
            return PluginResult.fail("Address already exceeded max uses for this address")

        guards = []
        if max_uses:
            guards.append(Below("num_uses", max_uses))
        if per_address:
            guards.append(LengthBelow(join_path("claimed_users", user_key), per_address))

        if context.is_claim_number_assigner:
            return PluginResult.ok(
                patches=[IncrementPatch("num_uses", 1, capture=CLAIM_NUMBER)],
                guards=guards,
                claim_number=CapturedValue(CLAIM_NUMBER),
            )
        return PluginResult.ok(patches=[IncrementPatch("num_uses", 1)], guards=guards)
