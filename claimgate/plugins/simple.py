"""
Small stateless gates.

    halt          administrative kill switch, always fails
    initiatedBy   signed-in session address must equal the claiming address
    minBalance    native account balance >= min_balance
"""

from pydantic import Field

from claimgate.lookups import AccountBalanceLookup
from claimgate.plugins.base import ClaimPlugin, Params, PluginMetadata, PluginResult


class HaltPlugin(ClaimPlugin):
    plugin_id = "halt"
    metadata = PluginMetadata(name="Halt Status", description="Claims are halted",
                              stateless=True, scoped=True, duplicates_allowed=False)

    def validate(self, context, public_params, private_params, custom_body,
                 prior_state, global_state, identity):
        return PluginResult.fail("Claim halted")


class ProofOfAddressPlugin(ClaimPlugin):
    plugin_id = "initiatedBy"
    metadata = PluginMetadata(name="Requires Proof of Address",
                              description="Claimer must be signed in as the address",
                              stateless=True, scoped=True, duplicates_allowed=False)

    def select_identity(self, request):
        return request.session_address

    def validate(self, context, public_params, private_params, custom_body,
                 prior_state, global_state, identity):
        if not identity:
            return PluginResult.fail("Must be authenticated to claim")
        if identity != context.address:
            return PluginResult.fail("Invalid address. Provided address does not match "
                                     "the address of the signed in user.")
        return PluginResult.ok()


class MinBalanceParams(Params):
    min_balance: int = Field(ge=0)


class MinBalancePlugin(ClaimPlugin):
    plugin_id = "minBalance"
    metadata = PluginMetadata(name="Minimum Balance",
                              description="Claimer must hold a minimum account balance",
                              stateless=True, scoped=True, duplicates_allowed=False)
    public_params_model = MinBalanceParams

    def __init__(self, accounts: AccountBalanceLookup, vault=None):
        super().__init__(vault)
        self._accounts = accounts

    def validate(self, context, public_params, private_params, custom_body,
                 prior_state, global_state, identity):
        if self._accounts.get_account_balance(context.address) >= public_params.min_balance:
            return PluginResult.ok()
        return PluginResult.fail("Insufficient balance")
