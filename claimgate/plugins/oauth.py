"""
OAuth / identity plugins — twitter, discord, github, google, email.

One implementation, parameterized by provider. The identity is resolved by
the authentication layer and handed in on the ClaimRequest; this module
never sees OAuth applications or secrets other than the user's own access
token, which is used only for the discord server-membership check.

State (under state.<instance_id>):
    {escaped identity id: number of successful claims}

Identity ids become a state path segment. "." is escaped to "[dot]"; ids
that already contain "[dot]" are rejected.
"""

import logging
from typing import List, Optional

from pydantic import Field

from claimgate.claims.state_patch import Below, IncrementPatch, escape_segment
from claimgate.plugins.base import ClaimPlugin, Params, PluginMetadata, PluginResult
from claimgate.plugins.http import OutboundHttp

logger = logging.getLogger(__name__)

OAUTH_PROVIDERS = ("twitter", "discord", "github", "google", "email")
DISCORD_MEMBER_URL = "https://discord.com/api/users/@me/guilds/{guild_id}/member"

_DISPLAY_NAMES = {
    "twitter": "Twitter",
    "discord": "Discord",
    "github": "GitHub",
    "google": "Google",
    "email": "Email",
}


class OAuthParams(Params):
    users: List[str] = Field(default_factory=list)
    max_uses_per_user: int = Field(0, ge=0)
    server_id: str = ""


def _discord_user_matches(entry: str, username: str, discriminator: Optional[str]) -> bool:
    """Match "name" or "name#1234" against a discord identity."""
    name, _, target_disc = entry.partition("#")
    if name != username:
        return False
    if discriminator and target_disc:
        try:
            return int(discriminator) == int(target_disc)
        except ValueError:
            return discriminator == target_disc
    return True


class OAuthPlugin(ClaimPlugin):
    public_params_model = OAuthParams
    private_params_model = OAuthParams
    default_state = {}

    def __init__(self, provider: str, http: Optional[OutboundHttp] = None, vault=None):
        if provider not in OAUTH_PROVIDERS:
            raise ValueError(f"Unknown OAuth provider {provider!r}")
        super().__init__(vault)
        self.plugin_id = provider
        self.metadata = PluginMetadata(
            name=_DISPLAY_NAMES[provider],
            description=f"Claimer must sign in with {_DISPLAY_NAMES[provider]}",
            stateless=False,
            scoped=True,
            duplicates_allowed=False,
        )
        self._http = http

    def select_identity(self, request):
        return request.identities.get(self.plugin_id)

    def validate(self, context, public_params, private_params, custom_body,
                 prior_state, global_state, identity):
        is_discord = self.plugin_id == "discord"
        params = public_params
        if not (public_params.users or public_params.server_id):
            params = private_params

        if identity is None or not identity.id or not identity.username:
            return PluginResult.fail("Invalid details. Could not get user.")

        try:
            key = escape_segment(identity.id)
        except ValueError as exc:
            return PluginResult.fail(str(exc))

        max_per_user = public_params.max_uses_per_user
        uses = (prior_state or {}).get(key, 0)
        if max_per_user and uses >= max_per_user:
            if is_discord:
                return PluginResult.fail("Discord user already exceeded max uses")
            return PluginResult.fail("User already exceeded max uses")

        if params.users:
            if is_discord:
                listed = any(_discord_user_matches(u, identity.username, identity.discriminator)
                             for u in params.users)
            else:
                listed = identity.username in params.users
            if not listed:
                return PluginResult.fail("User not in list of whitelisted users.")

        if is_discord and params.server_id:
            if not self._in_discord_server(params.server_id, identity):
                return PluginResult.fail("User not in server")

        guards = [Below(key, max_per_user)] if max_per_user else []
        return PluginResult.ok(patches=[IncrementPatch(key, 1)], guards=guards)

    def _in_discord_server(self, server_id: str, identity) -> bool:
        if self._http is None or not identity.access_token:
            return False
        member = self._http.get_json(
            DISCORD_MEMBER_URL.format(guild_id=server_id),
            headers={"Authorization": f"Bearer {identity.access_token}"},
        )
        user = (member or {}).get("user") or {}
        return str(user.get("id", "")) == str(identity.id)
