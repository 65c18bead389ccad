"""whitelist — address-list membership, inline or by list id."""

from typing import List, Optional

from pydantic import Field

from claimgate.lookups import AddressList, AddressListLookup
from claimgate.plugins.base import ClaimPlugin, Params, PluginMetadata, PluginResult


class InlineList(Params):
    addresses: List[str] = Field(default_factory=list)
    allowlist: bool = True


class WhitelistParams(Params):
    address_list: Optional[InlineList] = Field(None, alias="list")
    list_id: str = ""


class WhitelistPlugin(ClaimPlugin):
    plugin_id = "whitelist"
    metadata = PluginMetadata(
        name="Whitelist",
        description="Claimer must be on an address list",
        stateless=True,
        scoped=True,
        duplicates_allowed=True,
    )
    public_params_model = WhitelistParams
    private_params_model = WhitelistParams

    def __init__(self, lists: AddressListLookup, vault=None):
        super().__init__(vault)
        self._lists = lists

    def validate(self, context, public_params, private_params, custom_body,
                 prior_state, global_state, identity):
        params = public_params
        if public_params.address_list is None and not public_params.list_id:
            params = private_params

        if params.list_id:
            lst = self._lists.get_list(params.list_id)
            if lst is None:
                return PluginResult.fail("List not found")
            if not lst.check_address(context.address):
                return PluginResult.fail("User not in list of whitelisted users.")

        if params.address_list is not None:
            inline = AddressList(list_id="", addresses=params.address_list.addresses,
                                 allowlist=params.address_list.allowlist)
            if not inline.check_address(context.address):
                return PluginResult.fail("User not in list of whitelisted users.")

        return PluginResult.ok()
