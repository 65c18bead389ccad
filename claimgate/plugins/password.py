"""password — stateless shared-secret check."""

import hmac

from claimgate.plugins.base import ClaimPlugin, Params, PluginMetadata, PluginResult


class PasswordPrivateParams(Params):
    password: str = ""


class PasswordPlugin(ClaimPlugin):
    plugin_id = "password"
    metadata = PluginMetadata(
        name="Password",
        description="Claimer must enter the password",
        stateless=True,
        scoped=True,
        duplicates_allowed=False,
    )
    private_params_model = PasswordPrivateParams
    secret_fields = ("password",)

    def validate(self, context, public_params, private_params, custom_body,
                 prior_state, global_state, identity):
        expected = private_params.password
        given = (custom_body or {}).get("password")
        if not expected or not given:
            return PluginResult.fail("Invalid configuration")
        if hmac.compare_digest(str(given).encode("utf-8"), expected.encode("utf-8")):
            return PluginResult.ok()
        return PluginResult.fail("Incorrect password")
