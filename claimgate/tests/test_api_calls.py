"""
Tests for the api plugin and the outbound HTTP client.

Proves:
  - webhooks receive a fresh one-time __key recorded per URI
  - identities are forwarded only when opted in, without access tokens
  - HTTP error statuses fail immediately, transport errors are retried
  - internal query URIs are answered in-process
"""

import json

import httpx
import pytest

from claimgate.errors import ConfigurationError, ExternalDependencyError
from claimgate.lookups import InMemoryAccountBalances, InMemoryAddressLists, InMemoryBalanceIndex
from claimgate.ownership.evaluator import AssetOwnershipEvaluator
from claimgate.plugins.api_calls import ApiCallsPlugin
from claimgate.plugins.base import ClaimRequest, Identity, ValidationContext
from claimgate.plugins.http import OutboundHttp
from claimgate.plugins.integration_queries import IntegrationQueryHandlers
from claimgate.storage.claim_store import MemoryClaimStore

PREFIX = "https://internal.example/query"
HOOK = "https://hooks.example/check"
ALICE = "bb1alice"


def _ctx():
    return ValidationContext(
        address=ALICE, claim_id="c1", attempt_id="t1", instance_id="api", plugin_id="api",
        simulate=False, created_at=0, last_updated=0, assign_method="firstComeFirstServe",
        is_claim_number_assigner=False, max_uses=10, curr_uses=0, now_ms=1234,
    )


class Recorder:
    """MockTransport handler that records requests and replays a script."""

    def __init__(self, *responses):
        self.requests = []
        self.responses = list(responses) or [httpx.Response(200, json={})]

    def __call__(self, request):
        self.requests.append(request)
        nxt = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(nxt, Exception):
            raise nxt
        return httpx.Response(nxt.status_code, content=nxt.content, headers=nxt.headers)


class TestApiCallsPlugin:

    def setup_method(self):
        self.store = MemoryClaimStore()
        self.accounts = InMemoryAccountBalances({ALICE: 10})
        self.sleeps = []

    def _plugin(self, recorder, max_retries=2):
        http = OutboundHttp(max_retries=max_retries, backoff_base=0.5,
                            transport=httpx.MockTransport(recorder),
                            sleep=self.sleeps.append)
        evaluator = AssetOwnershipEvaluator(InMemoryBalanceIndex(), InMemoryAddressLists())
        queries = IntegrationQueryHandlers(evaluator, self.accounts, http)
        return ApiCallsPlugin(http, queries, self.store, PREFIX)

    def _run(self, plugin, calls, request=None, body=None):
        request = request or ClaimRequest(address=ALICE)
        public = plugin.parse_public_params({"apiCalls": calls})
        private = plugin.parse_private_params({})
        return plugin.validate(_ctx(), public, private, body or {}, None, None,
                               plugin.select_identity(request))

    def test_webhook_carries_callback_key(self):
        rec = Recorder()
        res = self._run(self._plugin(rec), [{"uri": HOOK, "passAddress": True}])
        assert res.success
        payload = json.loads(rec.requests[0].content)
        keys = self.store.get_callback_keys(HOOK)
        assert len(keys) == 1
        assert payload["__key"] == keys[0]["key"] and len(payload["__key"]) == 64
        assert keys[0]["timestamp"] == 1234
        assert payload["address"] == ALICE
        assert payload["claimId"] == "c1"

    def test_fresh_key_per_call(self):
        rec = Recorder()
        plugin = self._plugin(rec)
        self._run(plugin, [{"uri": HOOK}])
        self._run(plugin, [{"uri": HOOK}])
        keys = [e["key"] for e in self.store.get_callback_keys(HOOK)]
        assert len(set(keys)) == 2

    def test_identity_only_when_opted_in_and_without_token(self):
        rec = Recorder()
        request = ClaimRequest(address=ALICE, identities={
            "discord": Identity("9", "bob", "42", "secret-token"),
            "github": Identity("7", "octo", None, "gh-token"),
        })
        self._run(self._plugin(rec), [{"uri": HOOK, "passDiscord": True}], request)
        payload = json.loads(rec.requests[0].content)
        assert payload["discord"] == {"id": "9", "username": "bob", "discriminator": "42"}
        assert payload["github"] is None
        assert payload["address"] is None
        assert b"secret-token" not in rec.requests[0].content

    def test_body_params_and_custom_body_merged(self):
        rec = Recorder()
        self._run(self._plugin(rec), [{"uri": HOOK, "bodyParams": {"a": 1, "b": 2}}],
                  body={"calls": [{"b": 3}]})
        payload = json.loads(rec.requests[0].content)
        assert payload["a"] == 1 and payload["b"] == 3

    def test_get_uses_query_string(self):
        rec = Recorder()
        self._run(self._plugin(rec), [{"uri": HOOK, "method": "GET", "bodyParams": {"x": [1]}}])
        req = rec.requests[0]
        assert req.method == "GET"
        assert req.url.params["x"] == "[1]"
        assert "__key" in req.url.params

    def test_status_error_not_retried(self):
        rec = Recorder(httpx.Response(500))
        res = self._run(self._plugin(rec), [{"uri": HOOK}])
        assert res.error == "Request failed with status code 500"
        assert len(rec.requests) == 1
        assert self.sleeps == []

    def test_transport_error_retried_with_backoff(self):
        rec = Recorder(httpx.ConnectError("down"), httpx.ConnectError("down"),
                       httpx.Response(200, json={}))
        res = self._run(self._plugin(rec), [{"uri": HOOK}])
        assert res.success
        assert len(rec.requests) == 3
        assert self.sleeps == [0.5, 1.0]

    def test_transport_error_exhausted(self):
        rec = Recorder(httpx.ConnectError("down"))
        res = self._run(self._plugin(rec, max_retries=1), [{"uri": HOOK}])
        assert not res.success
        assert len(rec.requests) == 2

    def test_stops_at_first_failing_call(self):
        rec = Recorder(httpx.Response(403), httpx.Response(200, json={}))
        res = self._run(self._plugin(rec), [{"uri": HOOK}, {"uri": HOOK + "/2"}])
        assert not res.success
        assert len(rec.requests) == 1

    def test_internal_min_badge(self):
        rec = Recorder()
        plugin = self._plugin(rec)
        ok = self._run(plugin, [{"uri": f"{PREFIX}/min-badge", "passAddress": True,
                                 "bodyParams": {"minBalance": 10}}])
        low = self._run(plugin, [{"uri": f"{PREFIX}/min-badge", "passAddress": True,
                                  "bodyParams": {"minBalance": 11}}])
        assert ok.success
        assert low.error == "Insufficient balance"
        assert rec.requests == []

    def test_internal_unknown_type(self):
        res = self._run(self._plugin(Recorder()), [{"uri": f"{PREFIX}/nope"}])
        assert res.error == "Invalid integration query type"

    def test_internal_github_contributions(self):
        rec = Recorder(httpx.Response(200, json=[{"login": "octo"}]))
        request = ClaimRequest(address=ALICE, identities={"github": Identity("7", "octo")})
        res = self._run(self._plugin(rec), [{
            "uri": f"{PREFIX}/github-contributions", "passGithub": True,
            "bodyParams": {"repository": "acme/widgets"},
        }], request)
        assert res.success
        assert str(rec.requests[0].url) == "https://api.github.com/repos/acme/widgets/contributors"

    def test_internal_github_contributions_rejects_non_list_body(self):
        rec = Recorder(httpx.Response(200, json={"message": "Moved Permanently"}))
        request = ClaimRequest(address=ALICE, identities={"github": Identity("7", "octo")})
        res = self._run(self._plugin(rec), [{
            "uri": f"{PREFIX}/github-contributions", "passGithub": True,
            "bodyParams": {"repository": "acme/widgets"},
        }], request)
        assert not res.success
        assert res.error == "Unexpected response from the GitHub contributors API"

    def test_rejects_unknown_method(self):
        plugin = self._plugin(Recorder())
        with pytest.raises(ConfigurationError):
            plugin.parse_public_params({"apiCalls": [{"uri": HOOK, "method": "PATCH"}]})


class TestOutboundHttp:

    def test_get_json_invalid(self):
        http = OutboundHttp(transport=httpx.MockTransport(
            lambda r: httpx.Response(200, content=b"not json")))
        with pytest.raises(ExternalDependencyError, match="Invalid JSON"):
            http.get_json("https://x.example")
