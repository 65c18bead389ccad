"""
ClaimService — owner operations on claims and the claim-attempt flow.

Owner operations:
    create_claim / update_claim / delete_claim   params validated, secrets
                                                 encrypted, state initialized
    get_claims                                   redacted views

Attempts:
    attempt_claim   pipeline -> atomic commit -> reward delivery
    simulate_claim  pipeline only
    redeem_password_code   password claim handing out the next code
    get_reserved_codes / get_attempt_status / redeliver_pending

Attempt-time failures come back as ClaimAttemptResult(success=False).
Configuration problems raise ConfigurationError at creation/update.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from claimgate.claims.models import (
    ActionType,
    ClaimDocument,
    PluginInstance,
    parse_claim,
)
from claimgate.engine.actions import ActionExecutor
from claimgate.engine.committer import AtomicStateCommitter
from claimgate.engine.context import EngineContext
from claimgate.engine.pipeline import ValidationPipeline
from claimgate.errors import (
    ConfigurationError,
    ExternalDependencyError,
    PermissionDenied,
    ValidationFailure,
)
from claimgate.plugins.base import ClaimRequest
from claimgate.plugins.num_uses import CODE_IDX

logger = logging.getLogger(__name__)


@dataclass
class ClaimAttemptResult:
    success: bool
    error: str = ""
    code: Optional[str] = None
    prev_codes: List[str] = field(default_factory=list)
    claim_number: Optional[int] = None
    attempt_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"success": self.success, "attempt_id": self.attempt_id}
        if not self.success:
            out["error"] = self.error
            return out
        if self.claim_number is not None:
            out["claim_number"] = self.claim_number
        if self.code is not None:
            out["code"] = self.code
            out["prev_codes"] = list(self.prev_codes)
        return out


def _set_field(data: Dict[str, Any], camel: str, snake: str, value: Any) -> None:
    data.pop(camel, None)
    data[snake] = value


class ClaimService:

    def __init__(self, ctx: EngineContext):
        self._ctx = ctx
        self._pipeline = ValidationPipeline(ctx.plugins, ctx.clock)
        self._committer = AtomicStateCommitter(ctx.store, ctx.clock)
        self._executor = ActionExecutor(ctx.vault, ctx.lists, ctx.balance_sink)

    @property
    def context(self) -> EngineContext:
        return self._ctx

    def close(self) -> None:
        self._ctx.close()

    # =========================================================================
    # LOADING
    # =========================================================================

    def _load(self, claim_id: str) -> Optional[ClaimDocument]:
        raw = self._ctx.store.get(claim_id)
        if raw is None:
            return None
        claim = parse_claim(raw)
        return None if claim.deleted_at is not None else claim

    def _require(self, claim_id: str) -> ClaimDocument:
        claim = self._load(claim_id)
        if claim is None:
            raise ValidationFailure(f"Claim {claim_id} not found")
        return claim

    # =========================================================================
    # OWNER OPERATIONS
    # =========================================================================

    def create_claim(self, raw: Mapping[str, Any], created_by: str) -> ClaimDocument:
        """Validate, encrypt and persist a new claim.

        Raises:
            ConfigurationError: on any invalid layout or plugin params.
        """
        data = dict(raw)
        claim_id = data.pop("claimId", None) or data.get("claim_id") or uuid.uuid4().hex
        now = self._ctx.clock()
        _set_field(data, "claimId", "claim_id", claim_id)
        _set_field(data, "createdBy", "created_by", created_by)
        _set_field(data, "createdAt", "created_at", now)
        _set_field(data, "lastUpdated", "last_updated", now)
        _set_field(data, "claimAttempts", "claim_attempts", {})
        _set_field(data, "deletedAt", "deleted_at", None)
        data["state"] = {}

        if self._ctx.store.get(claim_id) is not None:
            raise ConfigurationError(f"Claim {claim_id} already exists")

        claim = self._prepare(parse_claim(data), existing=None)
        claim.state = {p.instance_id: self._ctx.plugins.require(p.plugin_id).initial_state()
                       for p in claim.plugins}
        self._ctx.store.put(claim.model_dump())
        logger.info("[CLAIMS] Created claim %s (%d plugins)", claim_id, len(claim.plugins))
        return claim

    def update_claim(self, claim_id: str, raw: Mapping[str, Any], updated_by: str) -> ClaimDocument:
        """Replace a claim's configuration, keeping live state.

        Plugin state survives unless the instance is new or sets reset_state.

        Raises:
            PermissionDenied: if updated_by is not the creator.
            ConfigurationError: on invalid params or an assign-method change.
        """
        existing = self._require_owned(claim_id, updated_by)
        data = dict(raw)
        _set_field(data, "claimId", "claim_id", claim_id)
        _set_field(data, "createdBy", "created_by", existing.created_by)
        _set_field(data, "createdAt", "created_at", existing.created_at)
        _set_field(data, "lastUpdated", "last_updated", self._ctx.clock())
        _set_field(data, "claimAttempts", "claim_attempts", {})
        _set_field(data, "deletedAt", "deleted_at", None)
        data["state"] = {}

        claim = self._prepare(parse_claim(data), existing=existing)
        if existing.num_uses_plugin() is not None and claim.assign_method != existing.assign_method:
            raise ConfigurationError("Cannot update assign method")

        def merge(live: Dict[str, Any]) -> Optional[Dict[str, Any]]:
            if live.get("deleted_at") is not None:
                return None
            live_state = live.get("state") or {}
            state = {}
            for inst in claim.plugins:
                if inst.reset_state or inst.instance_id not in live_state:
                    state[inst.instance_id] = self._ctx.plugins.require(inst.plugin_id).initial_state()
                else:
                    state[inst.instance_id] = live_state[inst.instance_id]
            new_doc = claim.model_dump()
            new_doc["plugins"] = [dict(p, reset_state=False) for p in new_doc["plugins"]]
            new_doc["state"] = state
            new_doc["claim_attempts"] = live.get("claim_attempts") or {}
            return new_doc

        stored = self._ctx.store.modify(claim_id, merge)
        if stored is None:
            raise ValidationFailure(f"Claim {claim_id} not found")
        logger.info("[CLAIMS] Updated claim %s", claim_id)
        return parse_claim(stored)

    def delete_claim(self, claim_id: str, deleted_by: str) -> None:
        self._require_owned(claim_id, deleted_by)
        now = self._ctx.clock()

        def soft_delete(live):
            live["deleted_at"] = now
            return live

        self._ctx.store.modify(claim_id, soft_delete)
        logger.info("[CLAIMS] Deleted claim %s", claim_id)

    def _require_owned(self, claim_id: str, caller: str) -> ClaimDocument:
        claim = self._require(claim_id)
        if caller != claim.created_by:
            raise PermissionDenied(f"Not authorized to modify claim {claim_id}")
        return claim

    def _prepare(self, claim: ClaimDocument, existing: Optional[ClaimDocument]) -> ClaimDocument:
        """Normalize params, enforce layout rules and encrypt secrets."""
        plugins: List[PluginInstance] = []
        seen_types = set()
        for inst in claim.plugins:
            plugin = self._ctx.plugins.require(inst.plugin_id)
            if inst.plugin_id in seen_types and not plugin.metadata.duplicates_allowed:
                raise ConfigurationError(f"Duplicate plugin type {inst.plugin_id} is not allowed")
            seen_types.add(inst.plugin_id)

            old = None
            if existing is not None:
                old = next((p for p in existing.plugins
                            if p.instance_id == inst.instance_id
                            and p.plugin_id == inst.plugin_id), None)

            public = plugin.parse_public_params(inst.public_params)
            if not inst.private_params and old is not None:
                encrypted = dict(old.private_params)
                private = plugin.parse_private_params(plugin.decrypt_private_params(encrypted))
            else:
                private = plugin.parse_private_params(inst.private_params)
                encrypted = plugin.encrypt_private_params(private.model_dump())
            plugin.check_params(public, private)

            plugins.append(inst.model_copy(update={
                "public_params": public.model_dump(),
                "private_params": encrypted,
                "public_state": {},
            }))
        claim.plugins = plugins

        if not claim.manual_distribution:
            if claim.assign_method == CODE_IDX and claim.first_plugin("codes") is None:
                raise ConfigurationError("codeIdx assignment requires a codes plugin")
            if claim.action.kind is ActionType.CODE:
                self._prepare_codes(claim, existing)
            elif claim.action.kind is ActionType.SET_BALANCE:
                self._prepare_balances(claim)
        return claim

    def _prepare_codes(self, claim: ClaimDocument, existing: Optional[ClaimDocument]) -> None:
        dist = claim.action.codes
        max_uses = claim.max_uses
        if max_uses <= 0:
            raise ConfigurationError("Code claims require numUses max_uses > 0")

        if dist.codes and dist.seed_code:
            raise ConfigurationError("Provide either codes or seed_code, not both")
        if dist.codes:
            if len(dist.codes) != max_uses:
                raise ConfigurationError(
                    f"Expected {max_uses} codes (max uses), got {len(dist.codes)}")
            dist.codes = self._ctx.vault.encrypt_many(dist.codes)
        elif dist.seed_code:
            dist.seed_code = self._ctx.vault.encrypt(dist.seed_code)
        elif existing is not None and existing.action.codes is not None:
            prior = existing.action.codes
            if prior.codes and len(prior.codes) != max_uses:
                raise ConfigurationError(
                    f"Expected {max_uses} codes (max uses), got {len(prior.codes)}")
            dist.codes, dist.seed_code = list(prior.codes), prior.seed_code
        else:
            raise ConfigurationError("Code claims require codes or a seed_code")

    @staticmethod
    def _prepare_balances(claim: ClaimDocument) -> None:
        spec = claim.action.balances_to_set
        max_uses = claim.max_uses
        if max_uses <= 0:
            raise ConfigurationError("Balance claims require numUses max_uses > 0")
        inc = spec.incremented_balances
        if inc is not None:
            if spec.manual_balances:
                raise ConfigurationError(
                    "Provide either incrementedBalances or manualBalances, not both")
            if not inc.start_balances:
                raise ConfigurationError("incrementedBalances requires startBalances")
            return
        if not spec.manual_balances:
            raise ConfigurationError("Balance claims require incrementedBalances or manualBalances")
        if len(spec.manual_balances) < max_uses:
            raise ConfigurationError(
                f"Expected at least {max_uses} manual balance sets (max uses), "
                f"got {len(spec.manual_balances)}")

    # =========================================================================
    # VIEWS
    # =========================================================================

    def get_claims(self, claim_ids: List[str], viewer: Optional[str] = None,
                   list_id: Optional[str] = None,
                   include_private_params: bool = False) -> List[Dict[str, Any]]:
        """Redacted views of live claims. Missing or deleted ids are skipped."""
        views = []
        for claim_id in claim_ids:
            claim = self._load(claim_id)
            if claim is not None:
                views.append(self._view(claim, viewer, list_id, include_private_params))
        return views

    def _can_view_state(self, claim: ClaimDocument, viewer: Optional[str],
                        list_id: Optional[str]) -> bool:
        if claim.action.kind is not ActionType.ADD_TO_LIST:
            return True
        lst = self._ctx.lists.get_list(claim.action.add_to_list.list_id)
        if lst is None:
            return False
        allowed = not (lst.private or lst.viewable_with_link)
        if lst.private:
            allowed = allowed or (viewer is not None and viewer == lst.created_by)
        if lst.viewable_with_link:
            allowed = allowed or list_id == lst.list_id
        return allowed

    def _view(self, claim: ClaimDocument, viewer: Optional[str],
              list_id: Optional[str], include_private: bool) -> Dict[str, Any]:
        show_private = include_private and viewer is not None and viewer == claim.created_by
        show_state = self._can_view_state(claim, viewer, list_id)

        plugins = []
        for inst in claim.plugins:
            plugin = self._ctx.plugins.require(inst.plugin_id)
            state = claim.plugin_state(inst.instance_id)
            view = inst.model_dump()
            view["public_state"] = (plugin.get_public_state(state) if show_state
                                    else plugin.get_blank_public_state())
            view["private_params"] = (plugin.decrypt_private_params(inst.private_params)
                                      if show_private else {})
            plugins.append(view)

        out = claim.model_dump(exclude={"state", "claim_attempts", "plugins"})
        out["plugins"] = plugins
        codes = out["action"].get("codes")
        if codes is not None:
            if show_private:
                codes["codes"] = self._ctx.vault.decrypt_many(claim.action.codes.codes)
                codes["seed_code"] = (self._ctx.vault.decrypt(claim.action.codes.seed_code)
                                      if claim.action.codes.seed_code else "")
            else:
                codes["codes"], codes["seed_code"] = [], ""
        return out

    # =========================================================================
    # ATTEMPTS
    # =========================================================================

    def _check_attemptable(self, claim: ClaimDocument, request: ClaimRequest) -> None:
        if request.fetched_at and claim.last_updated > request.fetched_at:
            raise ValidationFailure("Claim has been updated since last fetch")
        if claim.manual_distribution:
            raise ValidationFailure("This claim is for manual distribution only.")

    def attempt_claim(self, claim_id: str, request: ClaimRequest) -> ClaimAttemptResult:
        if not request.attempt_id:
            request.attempt_id = uuid.uuid4().hex
        try:
            claim = self._require(claim_id)
            self._check_attemptable(claim, request)
            outcome = self._pipeline.run(claim, request)

            if outcome.replayed:
                delivery = self._executor.deliver(claim, request.address, outcome.claim_number)
                return ClaimAttemptResult(True, code=delivery.code,
                                          prev_codes=delivery.prev_codes,
                                          claim_number=outcome.claim_number,
                                          attempt_id=request.attempt_id)

            number = self._committer.commit(claim, request, outcome)
        except ValidationFailure as exc:
            return ClaimAttemptResult(False, error=str(exc), attempt_id=request.attempt_id)
        except (ExternalDependencyError, ConfigurationError) as exc:
            return ClaimAttemptResult(False, error=str(exc), attempt_id=request.attempt_id)

        return self._deliver(claim_id, request, number)

    def _deliver(self, claim_id: str, request: ClaimRequest, number: int) -> ClaimAttemptResult:
        committed = parse_claim(self._ctx.store.get(claim_id))
        try:
            delivery = self._executor.deliver(committed, request.address, number)
        except ExternalDependencyError as exc:
            logger.warning("[ACTION] Delivery for claim %s #%d failed, pending redelivery: %s",
                           claim_id, number, exc)
            return ClaimAttemptResult(False, error=f"Reward delivery pending: {exc}",
                                      claim_number=number, attempt_id=request.attempt_id)
        except ConfigurationError as exc:
            logger.error("[ACTION] Claim %s #%d cannot be delivered: %s", claim_id, number, exc)
            return ClaimAttemptResult(False, error=f"Reward delivery failed: {exc}",
                                      claim_number=number, attempt_id=request.attempt_id)
        self._ctx.store.mark_delivered(claim_id, request.attempt_id)
        return ClaimAttemptResult(True, code=delivery.code, prev_codes=delivery.prev_codes,
                                  claim_number=number, attempt_id=request.attempt_id)

    def simulate_claim(self, claim_id: str, request: ClaimRequest) -> ClaimAttemptResult:
        """Run the plugin chain without committing anything."""
        try:
            claim = self._require(claim_id)
            self._check_attemptable(claim, request)
            self._pipeline.run(claim, request, simulate=True)
        except (ValidationFailure, ExternalDependencyError, ConfigurationError) as exc:
            return ClaimAttemptResult(False, error=str(exc), attempt_id=request.attempt_id)
        return ClaimAttemptResult(True, attempt_id=request.attempt_id)

    def redeem_password_code(self, claim_id: str, address: str, password: str,
                             attempt_id: str = "") -> ClaimAttemptResult:
        """Password claim distributing the next code.

        Serialized per claim in-process; the numUses guards in the atomic
        commit keep it correct across processes.
        """
        claim = self._load(claim_id)
        if claim is None:
            return ClaimAttemptResult(False, error=f"Claim {claim_id} not found")
        pw = claim.first_plugin("password")
        if pw is None or claim.action.kind is not ActionType.CODE:
            return ClaimAttemptResult(False, error="Invalid configuration")

        request = ClaimRequest(address=address, attempt_id=attempt_id,
                               custom_body={pw.instance_id: {"password": password}})
        with self._ctx.mutexes.hold(claim_id):
            return self.attempt_claim(claim_id, request)

    def get_reserved_codes(self, claim_id: str, address: str) -> List[str]:
        """Codes already earned by `address` on a Code claim."""
        claim = self._require(claim_id)
        if claim.action.kind is not ActionType.CODE:
            raise ValidationFailure("Invalid configuration. Reserved codes can only "
                                    "be fetched for code claims.")
        return self._executor.reserved_codes(claim, address)

    def get_attempt_status(self, claim_id: str, attempt_id: str) -> Optional[Dict[str, Any]]:
        raw = self._ctx.store.get(claim_id)
        if raw is None:
            return None
        record = (raw.get("claim_attempts") or {}).get(attempt_id)
        if record is None:
            return None
        return {
            "success": True,
            "claim_number": record.get("claim_number"),
            "delivered": bool(record.get("delivered")),
        }

    def redeliver_pending(self, claim_id: str) -> int:
        """Re-run delivery for committed attempts not yet marked delivered."""
        claim = self._require(claim_id)
        count = 0
        for attempt_id, record in sorted(claim.claim_attempts.items()):
            if record.get("delivered"):
                continue
            try:
                self._executor.deliver(claim, record["address"], record["claim_number"])
            except ExternalDependencyError as exc:
                logger.warning("[ACTION] Redelivery of %s on claim %s failed: %s",
                               attempt_id, claim_id, exc)
                continue
            except ConfigurationError as exc:
                logger.error("[ACTION] Attempt %s on claim %s cannot be delivered: %s",
                             attempt_id, claim_id, exc)
                continue
            if self._ctx.store.mark_delivered(claim_id, attempt_id):
                count += 1
        logger.info("[ACTION] Redelivered %d pending attempt(s) on claim %s", count, claim_id)
        return count
