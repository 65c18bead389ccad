"""mustOwnBadges — delegates to the asset ownership evaluator."""

import logging
import time
from typing import Any, Dict, Optional

from claimgate.errors import ConfigurationError, IntegrityError, ValidationFailure
from claimgate.ownership.evaluator import AssetOwnershipEvaluator
from claimgate.ownership.requirements import parse_requirement_tree
from claimgate.plugins.base import ClaimPlugin, Params, PluginMetadata, PluginResult

logger = logging.getLogger(__name__)


class OwnershipParams(Params):
    ownership_requirements: Optional[Dict[str, Any]] = None


class MustOwnBadgesPlugin(ClaimPlugin):
    plugin_id = "mustOwnBadges"
    metadata = PluginMetadata(
        name="Ownership Requirements",
        description="Which badges / lists must the user own / be on to claim?",
        stateless=True,
        scoped=True,
        duplicates_allowed=True,
    )
    public_params_model = OwnershipParams
    private_params_model = OwnershipParams

    def __init__(self, evaluator: AssetOwnershipEvaluator, vault=None):
        super().__init__(vault)
        self._evaluator = evaluator

    def check_params(self, public, private):
        tree = public.ownership_requirements or private.ownership_requirements
        if not tree:
            raise ConfigurationError("mustOwnBadges: no ownership requirements found")
        try:
            parse_requirement_tree(tree, int(time.time() * 1000))
        except IntegrityError as exc:
            raise ConfigurationError(f"mustOwnBadges: {exc}") from exc

    def validate(self, context, public_params, private_params, custom_body,
                 prior_state, global_state, identity):
        tree = public_params.ownership_requirements or private_params.ownership_requirements
        if not tree:
            return PluginResult.fail("No ownership requirements found")
        try:
            self._evaluator.evaluate(tree, context.address)
        except (ValidationFailure, IntegrityError) as exc:
            return PluginResult.fail(getattr(exc, "message", None) or str(exc))
        return PluginResult.ok()
