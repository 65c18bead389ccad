"""
Plugin table — every built-in plugin, constructed once at engine startup
with its collaborators injected. Lookups at attempt time are plain dict
reads by plugin id.
"""

import logging
from typing import Dict, Optional

from claimgate.errors import ConfigurationError
from claimgate.lookups import AccountBalanceLookup, AddressListLookup
from claimgate.ownership.evaluator import AssetOwnershipEvaluator
from claimgate.plugins.api_calls import ApiCallsPlugin
from claimgate.plugins.base import ClaimPlugin
from claimgate.plugins.codes import CodesPlugin
from claimgate.plugins.http import OutboundHttp
from claimgate.plugins.integration_queries import IntegrationQueryHandlers
from claimgate.plugins.ip import IpRestrictionsPlugin
from claimgate.plugins.must_own_badges import MustOwnBadgesPlugin
from claimgate.plugins.num_uses import NumUsesPlugin
from claimgate.plugins.oauth import OAUTH_PROVIDERS, OAuthPlugin
from claimgate.plugins.password import PasswordPlugin
from claimgate.plugins.simple import HaltPlugin, MinBalancePlugin, ProofOfAddressPlugin
from claimgate.plugins.transfer_times import TransferTimesPlugin
from claimgate.plugins.whitelist import WhitelistPlugin
from claimgate.security.code_vault import CodeVault

logger = logging.getLogger(__name__)


class PluginTable:
    """Read-only mapping of plugin id -> plugin."""

    def __init__(self, plugins: Dict[str, ClaimPlugin]):
        self._plugins = dict(plugins)

    def get(self, plugin_id: str) -> Optional[ClaimPlugin]:
        return self._plugins.get(plugin_id)

    def require(self, plugin_id: str) -> ClaimPlugin:
        plugin = self._plugins.get(plugin_id)
        if plugin is None:
            raise ConfigurationError(f"Plugin not found: {plugin_id}")
        return plugin

    def ids(self):
        return sorted(self._plugins)

    def __contains__(self, plugin_id: str) -> bool:
        return plugin_id in self._plugins


def build_plugin_table(vault: CodeVault, lists: AddressListLookup,
                       evaluator: AssetOwnershipEvaluator,
                       accounts: AccountBalanceLookup, http: OutboundHttp,
                       callback_keys, internal_query_prefix: str) -> PluginTable:
    queries = IntegrationQueryHandlers(evaluator, accounts, http)
    plugins = [
        NumUsesPlugin(vault),
        CodesPlugin(vault),
        PasswordPlugin(vault),
        WhitelistPlugin(lists, vault),
        TransferTimesPlugin(vault),
        MustOwnBadgesPlugin(evaluator, vault),
        IpRestrictionsPlugin(vault),
        ApiCallsPlugin(http, queries, callback_keys, internal_query_prefix, vault),
        HaltPlugin(vault),
        ProofOfAddressPlugin(vault),
        MinBalancePlugin(accounts, vault),
    ]
    plugins.extend(OAuthPlugin(p, http, vault) for p in OAUTH_PROVIDERS)

    table = {p.plugin_id: p for p in plugins}
    logger.info("[BOOTSTRAP] Registered %d plugins: %s", len(table), ", ".join(sorted(table)))
    return PluginTable(table)
