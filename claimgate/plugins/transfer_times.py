"""transferTimes — claims are only open inside configured time windows (ms)."""

from typing import Any, Dict, List

from pydantic import Field, field_validator

from claimgate.ownership.ranges import UintRange, ranges_from, search
from claimgate.plugins.base import ClaimPlugin, Params, PluginMetadata, PluginResult


class TransferTimesParams(Params):
    transfer_times: List[Dict[str, Any]] = Field(default_factory=list)

    @field_validator("transfer_times")
    @classmethod
    def _well_formed(cls, v):
        try:
            parsed = ranges_from(v)
        except (KeyError, TypeError, ValueError):
            raise ValueError("transfer_times entries need integer start and end")
        for r in parsed:
            if not r.is_valid():
                raise ValueError("transfer_times must be ranges with 0 <= start <= end")
        return v

    def ranges(self) -> List[UintRange]:
        return ranges_from(self.transfer_times)


class TransferTimesPlugin(ClaimPlugin):
    plugin_id = "transferTimes"
    metadata = PluginMetadata(
        name="Transfer Times",
        description="Claims are only accepted during set times",
        stateless=True,
        scoped=True,
        duplicates_allowed=True,
    )
    public_params_model = TransferTimesParams

    def validate(self, context, public_params, private_params, custom_body,
                 prior_state, global_state, identity):
        if search(public_params.ranges(), context.now_ms):
            return PluginResult.ok()
        return PluginResult.fail("Invalid transfer time")
