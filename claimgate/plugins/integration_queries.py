"""
Internal integration queries — API calls whose URI falls under the internal
query prefix are answered in-process instead of over the network.

    min-badge              account balance >= minBalance
    must-own-badges        ownership requirement tree
    github-contributions   github user appears in a repo's contributors

Each handler returns None on success and raises ValidationFailure (or
ExternalDependencyError for the GitHub lookup) otherwise.
"""

import logging
from typing import Any, Callable, Dict, Optional

from claimgate.errors import ValidationFailure
from claimgate.lookups import AccountBalanceLookup
from claimgate.ownership.evaluator import AssetOwnershipEvaluator
from claimgate.plugins.http import OutboundHttp

logger = logging.getLogger(__name__)

GITHUB_CONTRIBUTORS_URL = "https://api.github.com/repos/{owner}/{repo}/contributors"


def _require_address(body: Dict[str, Any]) -> str:
    address = body.get("address")
    if not address or not isinstance(address, str):
        raise ValidationFailure("Address not provided")
    return address


class IntegrationQueryHandlers:

    def __init__(self, evaluator: AssetOwnershipEvaluator,
                 accounts: AccountBalanceLookup,
                 http: Optional[OutboundHttp] = None):
        self._evaluator = evaluator
        self._accounts = accounts
        self._http = http
        self._handlers: Dict[str, Callable[[Dict[str, Any]], None]] = {
            "min-badge": self._min_badge,
            "must-own-badges": self._must_own_badges,
            "github-contributions": self._github_contributions,
        }

    def handle(self, query_type: str, body: Dict[str, Any]) -> None:
        handler = self._handlers.get(query_type)
        if handler is None:
            raise ValidationFailure("Invalid integration query type")
        logger.debug("[API] Internal query %s", query_type)
        handler(body)

    def _min_badge(self, body: Dict[str, Any]) -> None:
        address = _require_address(body)
        try:
            min_balance = int(body.get("minBalance", 0))
        except (TypeError, ValueError):
            raise ValidationFailure("Invalid minBalance")
        if self._accounts.get_account_balance(address) < min_balance:
            raise ValidationFailure("Insufficient balance")

    def _must_own_badges(self, body: Dict[str, Any]) -> None:
        address = _require_address(body)
        tree = body.get("ownershipRequirements")
        if not tree:
            raise ValidationFailure("No ownership requirements found")
        self._evaluator.evaluate(tree, address)

    def _github_contributions(self, body: Dict[str, Any]) -> None:
        github = body.get("github") or {}
        username = github.get("username")
        owner, _, repo = str(body.get("repository", "")).partition("/")
        if not username or not owner or not repo:
            raise ValidationFailure("Invalid github contributions query")
        if self._http is None:
            raise ValidationFailure("Outbound HTTP is not configured")

        contributors = self._http.get_json(
            GITHUB_CONTRIBUTORS_URL.format(owner=owner, repo=repo))
        if not isinstance(contributors, list):
            raise ValidationFailure("Unexpected response from the GitHub contributors API")
        if not any(isinstance(c, dict) and c.get("login") == username for c in contributors):
            raise ValidationFailure("User has not contributed to the specified repository")
