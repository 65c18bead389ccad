"""
api — custom validation through one or more API calls, in order.

Each call is either an internal integration query (URI under the configured
prefix) or an arbitrary webhook. Webhook calls carry a fresh one-time
callback key (`__key`), recorded in the store per URI before the request is
sent, so the receiver can confirm the call came from this engine.

Identity fields are only forwarded when the call opts in (pass_*), and
webhooks only ever receive {id, username[, discriminator]}: access tokens
stay in-process. Any failed call fails the plugin.
"""

import dataclasses
import json
import logging
import secrets
from typing import Any, Dict, List

from pydantic import Field, field_validator

from claimgate.errors import ExternalDependencyError, IntegrityError, ValidationFailure
from claimgate.plugins.base import ClaimPlugin, Params, PluginMetadata, PluginResult
from claimgate.plugins.http import OutboundHttp
from claimgate.plugins.integration_queries import IntegrationQueryHandlers
from claimgate.plugins.oauth import OAUTH_PROVIDERS

logger = logging.getLogger(__name__)

HTTP_METHODS = ("GET", "POST", "PUT", "DELETE")


class ApiCall(Params):
    uri: str
    name: str = ""
    method: str = "POST"
    body_params: Dict[str, Any] = Field(default_factory=dict)
    pass_address: bool = False
    pass_discord: bool = False
    pass_twitter: bool = False
    pass_github: bool = False
    pass_google: bool = False
    pass_email: bool = False

    @field_validator("method")
    @classmethod
    def _known_method(cls, v: str) -> str:
        v = (v or "POST").upper()
        if v not in HTTP_METHODS:
            raise ValueError(f"method must be one of {HTTP_METHODS}")
        return v

    @field_validator("uri")
    @classmethod
    def _http_uri(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("uri must be an http(s) URL")
        return v


class ApiParams(Params):
    api_calls: List[ApiCall] = Field(default_factory=list)


def _query_value(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return value


class ApiCallsPlugin(ClaimPlugin):
    plugin_id = "api"
    metadata = PluginMetadata(
        name="Custom API Calls",
        description="Call your own API for custom validation checks",
        stateless=True,
        scoped=True,
        duplicates_allowed=True,
    )
    public_params_model = ApiParams

    def __init__(self, http: OutboundHttp, queries: IntegrationQueryHandlers,
                 callback_keys, internal_prefix: str, vault=None):
        super().__init__(vault)
        self._http = http
        self._queries = queries
        self._callback_keys = callback_keys
        self._internal_prefix = internal_prefix

    def select_identity(self, request):
        return dict(request.identities)

    def validate(self, context, public_params, private_params, custom_body,
                 prior_state, global_state, identity):
        identities = identity or {}
        extras = (custom_body or {}).get("calls") or []

        for i, call in enumerate(public_params.api_calls):
            extra = extras[i] if i < len(extras) and isinstance(extras[i], dict) else {}
            body: Dict[str, Any] = {**call.body_params, **extra}
            body["claimId"] = context.claim_id
            body["address"] = context.address if call.pass_address else None
            for provider in OAUTH_PROVIDERS:
                ident = identities.get(provider) if getattr(call, f"pass_{provider}") else None
                body[provider] = ident

            try:
                if call.uri.startswith(self._internal_prefix):
                    for provider in OAUTH_PROVIDERS:
                        if body.get(provider) is not None:
                            body[provider] = dataclasses.asdict(body[provider])
                    self._queries.handle(call.uri.rstrip("/").rsplit("/", 1)[-1], body)
                else:
                    self._call_webhook(call, body, context.now_ms)
            except (ValidationFailure, ExternalDependencyError, IntegrityError) as exc:
                message = getattr(exc, "message", None) or str(exc)
                logger.info("[API] Call %d (%s) failed for claim %s: %s",
                            i, call.name or call.uri, context.claim_id, message)
                return PluginResult.fail(message)

        return PluginResult.ok()

    def _call_webhook(self, call: ApiCall, body: Dict[str, Any], now_ms: int) -> None:
        for provider in OAUTH_PROVIDERS:
            if body.get(provider) is not None:
                body[provider] = body[provider].public_view()

        key = secrets.token_hex(32)
        self._callback_keys.push_callback_key(call.uri, key, now_ms)
        payload = {"__key": key, **body}

        if call.method == "GET":
            params = {k: _query_value(v) for k, v in payload.items() if v is not None}
            self._http.request("GET", call.uri, params=params)
        else:
            self._http.request(call.method, call.uri, json=payload)
