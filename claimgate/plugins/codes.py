"""
codes — the claimer must present one of N one-time codes.

Candidates are an explicit encrypted list, or generated on demand from an
encrypted seed (see security.code_vault.generate_codes). A used code is
recorded as used_code_indices.<idx>, guarded by Unset so two concurrent
attempts presenting the same code cannot both commit.
"""

import logging
from typing import List

from pydantic import Field

from claimgate.claims.state_patch import SetPatch, Unset, join_path
from claimgate.errors import ConfigurationError
from claimgate.plugins.base import ClaimPlugin, Params, PluginMetadata, PluginResult
from claimgate.security.code_vault import generate_codes

logger = logging.getLogger(__name__)


class CodesPublicParams(Params):
    num_codes: int = Field(0, ge=0)


class CodesPrivateParams(Params):
    codes: List[str] = Field(default_factory=list)
    seed_code: str = ""


class CodesPlugin(ClaimPlugin):
    plugin_id = "codes"
    metadata = PluginMetadata(
        name="Codes",
        description="Claimer must enter a valid one-time code",
        stateless=False,
        scoped=True,
        duplicates_allowed=True,
    )
    public_params_model = CodesPublicParams
    private_params_model = CodesPrivateParams
    secret_fields = ("codes", "seed_code")
    default_state = {"used_code_indices": {}}

    def check_params(self, public, private):
        if private.codes and private.seed_code:
            raise ConfigurationError("codes: provide either codes or seed_code, not both")
        if private.codes and len(private.codes) != public.num_codes:
            raise ConfigurationError(
                f"codes: expected {public.num_codes} codes, got {len(private.codes)}")

    def get_public_state(self, state):
        return {"used_code_indices": list((state.get("used_code_indices") or {}).keys())}

    def get_blank_public_state(self):
        return {"used_code_indices": []}

    @staticmethod
    def candidates(public_params: CodesPublicParams,
                   private_params: CodesPrivateParams) -> List[str]:
        if private_params.seed_code:
            return generate_codes(private_params.seed_code, public_params.num_codes)
        return list(private_params.codes)

    def validate(self, context, public_params, private_params, custom_body,
                 prior_state, global_state, identity):
        code = (custom_body or {}).get("code")
        if not code:
            return PluginResult.fail("Invalid code in body provided.")

        codes = self.candidates(public_params, private_params)
        if not codes or len(codes) != public_params.num_codes:
            return PluginResult.fail("Invalid configuration")

        try:
            idx = codes.index(code)
        except ValueError:
            return PluginResult.fail("Invalid code. Not found in list of codes.")

        used = (prior_state or {}).get("used_code_indices") or {}
        if str(idx) in used:
            return PluginResult.fail("Code already used")

        path = join_path("used_code_indices", idx)
        return PluginResult.ok(
            patches=[SetPatch(path, 1)],
            guards=[Unset(path)],
            claim_number=idx if context.is_claim_number_assigner else None,
        )
