"""
Claim documents — configuration plus mutable state for one reward.

Accepts camelCase (as stored by the upstream document collection) or
snake_case input; always dumps snake_case.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from claimgate.claims.state_patch import escape_segment
from claimgate.errors import ConfigurationError

NUM_USES_PLUGIN = "numUses"


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ActionType(Enum):
    CODE = "Code"
    SET_BALANCE = "SetBalance"
    ADD_TO_LIST = "AddToList"
    NONE = "None"


# =============================================================================
# PLUGIN INSTANCES
# =============================================================================

class PluginInstance(_Model):
    instance_id: str = ""
    plugin_id: str
    public_params: Dict[str, Any] = Field(default_factory=dict)
    private_params: Dict[str, Any] = Field(default_factory=dict)
    public_state: Dict[str, Any] = Field(default_factory=dict)
    reset_state: bool = False

    @model_validator(mode="after")
    def _default_instance_id(self) -> "PluginInstance":
        if not self.instance_id:
            self.instance_id = self.plugin_id
        return self


# =============================================================================
# ACTIONS
# =============================================================================

class CodeDistribution(_Model):
    codes: List[str] = Field(default_factory=list)
    seed_code: str = ""


class IncrementedBalances(_Model):
    start_balances: List[Dict[str, Any]] = Field(default_factory=list)
    increment_badge_ids_by: int = 0
    increment_ownership_times_by: int = 0


class ManualBalances(_Model):
    balances: List[Dict[str, Any]] = Field(default_factory=list)


class BalanceSet(_Model):
    incremented_balances: Optional[IncrementedBalances] = None
    manual_balances: List[ManualBalances] = Field(default_factory=list)


class AddToList(_Model):
    list_id: str


class ClaimAction(_Model):
    codes: Optional[CodeDistribution] = None
    balances_to_set: Optional[BalanceSet] = None
    add_to_list: Optional[AddToList] = None

    @model_validator(mode="after")
    def _at_most_one(self) -> "ClaimAction":
        kinds = [k for k in (self.codes, self.balances_to_set, self.add_to_list) if k]
        if len(kinds) > 1:
            raise ValueError("A claim must have exactly one action kind")
        return self

    @property
    def kind(self) -> ActionType:
        if self.codes is not None:
            return ActionType.CODE
        if self.balances_to_set is not None:
            return ActionType.SET_BALANCE
        if self.add_to_list is not None:
            return ActionType.ADD_TO_LIST
        return ActionType.NONE


# =============================================================================
# CLAIM DOCUMENT
# =============================================================================

class ClaimDocument(_Model):
    claim_id: str
    created_by: str
    collection_id: int = 0
    manual_distribution: bool = False
    action: ClaimAction = Field(default_factory=ClaimAction)
    plugins: List[PluginInstance] = Field(default_factory=list)
    state: Dict[str, Any] = Field(default_factory=dict)
    claim_attempts: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    created_at: int = 0
    last_updated: int = 0
    deleted_at: Optional[int] = None

    @model_validator(mode="after")
    def _check_layout(self) -> "ClaimDocument":
        ids = [p.instance_id for p in self.plugins]
        if len(ids) != len(set(ids)):
            raise ValueError("Duplicate plugin instance ids")
        if not self.manual_distribution:
            if self.action.kind is ActionType.NONE:
                raise ValueError("A claim must have exactly one action kind")
            if self.num_uses_plugin() is None:
                raise ValueError("numUses plugin is required")
        return self

    def first_plugin(self, plugin_id: str) -> Optional[PluginInstance]:
        return next((p for p in self.plugins if p.plugin_id == plugin_id), None)

    def num_uses_plugin(self) -> Optional[PluginInstance]:
        return self.first_plugin(NUM_USES_PLUGIN)

    def plugin_state(self, instance_id: str) -> Dict[str, Any]:
        return self.state.get(instance_id) or {}

    @property
    def max_uses(self) -> int:
        plugin = self.num_uses_plugin()
        return int(plugin.public_params.get("max_uses", 0)) if plugin else 0

    @property
    def assign_method(self) -> str:
        plugin = self.num_uses_plugin()
        if plugin is None:
            return ""
        return plugin.public_params.get("assign_method", "firstComeFirstServe")

    def claimed_numbers(self, address: str) -> List[int]:
        plugin = self.num_uses_plugin()
        if plugin is None:
            return []
        users = self.plugin_state(plugin.instance_id).get("claimed_users") or {}
        return list(users.get(escape_segment(address), []))


def parse_claim(raw: Any) -> ClaimDocument:
    """Build a ClaimDocument, turning schema errors into ConfigurationError."""
    if isinstance(raw, ClaimDocument):
        return raw
    try:
        return ClaimDocument.model_validate(raw)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid claim document: {exc}") from exc
