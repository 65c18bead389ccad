"""
ip — per-IP usage limit.

Only the SHA-256 hex digest of the IP is ever used as a state key; the raw
address is neither persisted nor logged.
"""

import hashlib

from pydantic import Field

from claimgate.claims.state_patch import Below, IncrementPatch, join_path
from claimgate.plugins.base import ClaimPlugin, Params, PluginMetadata, PluginResult


class IpParams(Params):
    max_uses_per_ip: int = Field(0, ge=0)


def hash_ip(ip: str) -> str:
    return hashlib.sha256(ip.encode("utf-8")).hexdigest()


class IpRestrictionsPlugin(ClaimPlugin):
    plugin_id = "ip"
    metadata = PluginMetadata(
        name="IP Restrictions",
        description="Limits claims per IP address",
        stateless=False,
        scoped=True,
        duplicates_allowed=False,
    )
    public_params_model = IpParams
    default_state = {"ips_used": {}}

    def select_identity(self, request):
        return request.ip

    def validate(self, context, public_params, private_params, custom_body,
                 prior_state, global_state, identity):
        if not identity:
            return PluginResult.fail("No IP address found.")

        hashed = hash_ip(identity)
        used = ((prior_state or {}).get("ips_used") or {}).get(hashed, 0)
        limit = public_params.max_uses_per_ip
        if limit and used >= limit:
            return PluginResult.fail("User already exceeded max uses for this IP address.")

        path = join_path("ips_used", hashed)
        guards = [Below(path, limit)] if limit else []
        return PluginResult.ok(patches=[IncrementPatch(path, 1)], guards=guards)
