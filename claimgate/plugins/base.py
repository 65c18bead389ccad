"""
Plugin contract — one verification unit with a uniform validate() call.

A plugin never touches the store. validate() receives read-only inputs and
returns a PluginResult; on success the result may carry patches and guards
relative to the plugin's own state namespace, plus an optional claim number
when the plugin is the claim-number assigner for the attempt.

Metadata:
  stateless            prior_state is not passed
  scoped               global_state (other plugins' state) is not passed
  duplicates_allowed   more than one instance per claim
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from claimgate.claims.state_patch import StateGuard, StatePatch
from claimgate.errors import ConfigurationError
from claimgate.security.code_vault import CodeVault

logger = logging.getLogger(__name__)


# =============================================================================
# PARAMS
# =============================================================================

class Params(BaseModel):
    """Base for plugin parameter models. Accepts camelCase or snake_case."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True,
                              extra="ignore")


class NoParams(Params):
    pass


# =============================================================================
# REQUEST / CONTEXT / RESULT
# =============================================================================

@dataclass(frozen=True)
class Identity:
    """Externally resolved identity (OAuth provider, email)."""
    id: str
    username: str
    discriminator: Optional[str] = None
    access_token: Optional[str] = None

    def public_view(self) -> Dict[str, Any]:
        view = {"id": self.id, "username": self.username}
        if self.discriminator is not None:
            view["discriminator"] = self.discriminator
        return view


@dataclass
class ClaimRequest:
    address: str
    attempt_id: str = ""
    custom_body: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    identities: Dict[str, Identity] = field(default_factory=dict)
    session_address: Optional[str] = None
    ip: Optional[str] = None
    fetched_at: int = 0
    specific_plugins_only: Optional[List[str]] = None

    def body_for(self, instance_id: str) -> Dict[str, Any]:
        return dict(self.custom_body.get(instance_id) or {})


@dataclass(frozen=True)
class ValidationContext:
    address: str
    claim_id: str
    attempt_id: str
    instance_id: str
    plugin_id: str
    simulate: bool
    created_at: int
    last_updated: int
    assign_method: str
    is_claim_number_assigner: bool
    max_uses: int
    curr_uses: int
    now_ms: int
    prior_attempt: Optional[Mapping[str, Any]] = None


@dataclass
class PluginResult:
    success: bool
    error: str = ""
    patches: List[StatePatch] = field(default_factory=list)
    guards: List[StateGuard] = field(default_factory=list)
    data: Dict[str, Any] = field(default_factory=dict)
    claim_number: Any = None

    @classmethod
    def ok(cls, patches=None, guards=None, claim_number=None, data=None) -> "PluginResult":
        return cls(True, "", list(patches or []), list(guards or []),
                   dict(data or {}), claim_number)

    @classmethod
    def fail(cls, error: str, data: Optional[Dict[str, Any]] = None) -> "PluginResult":
        return cls(False, error, data=dict(data or {}))


@dataclass(frozen=True)
class PluginMetadata:
    name: str
    description: str = ""
    stateless: bool = False
    scoped: bool = True
    duplicates_allowed: bool = False


# =============================================================================
# PLUGIN BASE
# =============================================================================

class ClaimPlugin:
    plugin_id: str = ""
    metadata: PluginMetadata = PluginMetadata(name="")
    public_params_model: Type[Params] = NoParams
    private_params_model: Type[Params] = NoParams
    secret_fields: Tuple[str, ...] = ()
    default_state: Dict[str, Any] = {}

    def __init__(self, vault: Optional[CodeVault] = None):
        self._vault = vault

    # ---------------------------------------------------------
    # PARAMS
    # ---------------------------------------------------------
    def parse_public_params(self, raw: Mapping[str, Any]) -> Params:
        return self._parse(self.public_params_model, raw, "public")

    def parse_private_params(self, raw: Mapping[str, Any]) -> Params:
        return self._parse(self.private_params_model, raw, "private")

    def _parse(self, model: Type[Params], raw: Mapping[str, Any], kind: str) -> Params:
        try:
            return model.model_validate(dict(raw or {}))
        except ValidationError as exc:
            raise ConfigurationError(
                f"Invalid {kind} params for plugin {self.plugin_id}: {exc}") from exc

    def check_params(self, public: Params, private: Params) -> None:
        """Cross-field checks run at claim creation. Override as needed."""

    # ---------------------------------------------------------
    # PRIVATE PARAM ENCRYPTION
    # ---------------------------------------------------------
    def _require_vault(self) -> CodeVault:
        if self._vault is None:
            raise ConfigurationError(f"Plugin {self.plugin_id} requires a code vault")
        return self._vault

    def encrypt_private_params(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        out = dict(params)
        if not self.secret_fields:
            return out
        vault = self._require_vault()
        for name in self.secret_fields:
            value = out.get(name)
            if isinstance(value, list):
                out[name] = vault.encrypt_many([str(v) for v in value])
            elif value:
                out[name] = vault.encrypt(str(value))
        return out

    def decrypt_private_params(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        out = dict(params)
        if not self.secret_fields:
            return out
        vault = self._require_vault()
        for name in self.secret_fields:
            value = out.get(name)
            if isinstance(value, list):
                out[name] = vault.decrypt_many(value)
            elif value:
                out[name] = vault.decrypt(value)
        return out

    # ---------------------------------------------------------
    # STATE
    # ---------------------------------------------------------
    def initial_state(self) -> Dict[str, Any]:
        return copy.deepcopy(self.default_state)

    def get_public_state(self, state: Mapping[str, Any]) -> Dict[str, Any]:
        return {}

    def get_blank_public_state(self) -> Dict[str, Any]:
        return {}

    # ---------------------------------------------------------
    # VALIDATION
    # ---------------------------------------------------------
    def select_identity(self, request: ClaimRequest) -> Any:
        """Pick the externally resolved input this plugin consumes."""
        return None

    def validate(self, context: ValidationContext, public_params: Any,
                 private_params: Any, custom_body: Dict[str, Any],
                 prior_state: Optional[Dict[str, Any]],
                 global_state: Optional[Mapping[str, Any]],
                 identity: Any) -> PluginResult:
        raise NotImplementedError
