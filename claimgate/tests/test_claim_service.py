"""
Tests for ClaimService — owner operations and the attempt flow end to end.

Covers:
  1. Proof of address + per-address code scenario
  2. Creation rules (duplicates, code counts, secrets encrypted)
  3. Update / delete (ownership, assign method, reset_state, live state kept)
  4. Views and redaction
  5. Attempts: stale fetch, manual distribution, simulate, replay
  6. Rewards: SetBalance, AddToList, redelivery
  7. Password-to-code path and reserved codes
"""

import pytest

from claimgate.errors import ConfigurationError, PermissionDenied, ValidationFailure
from claimgate.lookups import AddressList
from claimgate.ownership.ranges import MAX_UINT64, Balance, UintRange
from claimgate.plugins.base import ClaimRequest
from claimgate.security.code_vault import generate_codes
from claimgate.tests.factories import NOW_MS, code_claim, num_uses

OWNER = "bb1owner"
ALICE = "bb1alice"
BOB = "bb1bob"
SEED = "seed-secret"


class TestClaimService:

    @pytest.fixture(autouse=True)
    def _engine(self, service, store, lists, balances, clock):
        self.service = service
        self.store = store
        self.lists = lists
        self.balances = balances
        self.clock = clock

    def _state(self, claim_id="claim-1"):
        return self.store.get(claim_id)["state"]

    # =========================================================================
    # 1. END-TO-END SCENARIO
    # =========================================================================

    def test_proof_of_address_code_scenario(self):
        self.service.create_claim(
            code_claim(max_uses=10, per_address=2, plugins=[{"pluginId": "initiatedBy"}]), OWNER)
        codes = generate_codes(SEED, 10)

        def attempt():
            return self.service.attempt_claim(
                "claim-1", ClaimRequest(address=ALICE, session_address=ALICE))

        first, second, third = attempt(), attempt(), attempt()
        assert first.success and first.code == codes[0] and first.prev_codes == []
        assert second.success and second.code == codes[1] and second.prev_codes == [codes[0]]
        assert not third.success
        assert "exceeded max uses for this address" in third.error
        assert self._state()["numUses"]["num_uses"] == 2

    def test_unauthenticated_attempt_rejected(self):
        self.service.create_claim(code_claim(plugins=[{"pluginId": "initiatedBy"}]), OWNER)
        result = self.service.attempt_claim("claim-1", ClaimRequest(address=ALICE))
        assert not result.success
        assert "Must be authenticated to claim" in result.error
        assert self._state()["numUses"]["num_uses"] == 0

    # =========================================================================
    # 2. CREATION
    # =========================================================================

    def test_duplicate_plugin_type_rejected(self):
        raw = code_claim()
        raw["plugins"].append({"instanceId": "second", "pluginId": "numUses",
                               "publicParams": {"maxUses": 1}})
        with pytest.raises(ConfigurationError, match="Duplicate plugin type"):
            self.service.create_claim(raw, OWNER)

    def test_duplicates_allowed_for_whitelist(self):
        raw = code_claim(plugins=[
            {"instanceId": "w1", "pluginId": "whitelist", "publicParams": {"list": {"addresses": [ALICE]}}},
            {"instanceId": "w2", "pluginId": "whitelist", "publicParams": {"list": {"addresses": [ALICE, BOB]}}},
        ])
        self.service.create_claim(raw, OWNER)
        assert self.service.attempt_claim("claim-1", ClaimRequest(address=ALICE)).success
        assert not self.service.attempt_claim("claim-1", ClaimRequest(address=BOB)).success

    def test_unknown_plugin_rejected(self):
        with pytest.raises(ConfigurationError, match="Plugin not found"):
            self.service.create_claim(code_claim(plugins=[{"pluginId": "telepathy"}]), OWNER)

    def test_code_count_must_match_max_uses(self):
        with pytest.raises(ConfigurationError, match="Expected 10 codes"):
            self.service.create_claim(code_claim(codes=["a", "b", "c"]), OWNER)

    def test_num_uses_required(self):
        raw = code_claim()
        raw["plugins"] = []
        with pytest.raises(ConfigurationError):
            self.service.create_claim(raw, OWNER)

    def test_code_idx_requires_codes_plugin(self):
        raw = code_claim()
        raw["plugins"] = [num_uses(assignMethod="codeIdx")]
        with pytest.raises(ConfigurationError, match="codeIdx"):
            self.service.create_claim(raw, OWNER)

    def test_secrets_encrypted_at_rest(self):
        raw = code_claim(codes=[f"code-{i}" for i in range(3)], max_uses=3, plugins=[
            {"pluginId": "password", "privateParams": {"password": "open-sesame"}}])
        self.service.create_claim(raw, OWNER)
        doc = self.store.get("claim-1")
        blob = repr(doc)
        assert "open-sesame" not in blob
        assert "code-0" not in blob

    def test_existing_claim_id_rejected(self):
        self.service.create_claim(code_claim(), OWNER)
        with pytest.raises(ConfigurationError, match="already exists"):
            self.service.create_claim(code_claim(), OWNER)

    # =========================================================================
    # 3. UPDATE / DELETE
    # =========================================================================

    def _update_raw(self, reset=False, **num_uses_extra):
        plugin = num_uses(**num_uses_extra)
        plugin["resetState"] = reset
        return {"collectionId": 1, "action": {"codes": {}}, "plugins": [plugin]}

    def test_update_keeps_live_state(self):
        self.service.create_claim(code_claim(), OWNER)
        self.service.attempt_claim("claim-1", ClaimRequest(address=ALICE))
        updated = self.service.update_claim("claim-1", self._update_raw(), OWNER)
        assert updated.plugin_state("numUses")["num_uses"] == 1
        assert self.store.get("claim-1")["claim_attempts"]

    def test_update_reset_state(self):
        self.service.create_claim(code_claim(), OWNER)
        self.service.attempt_claim("claim-1", ClaimRequest(address=ALICE))
        updated = self.service.update_claim("claim-1", self._update_raw(reset=True), OWNER)
        assert updated.plugin_state("numUses") == {"claimed_users": {}, "num_uses": 0}
        assert updated.plugins[0].reset_state is False

    def test_update_keeps_seed_code(self):
        self.service.create_claim(code_claim(), OWNER)
        self.service.update_claim("claim-1", self._update_raw(), OWNER)
        result = self.service.attempt_claim("claim-1", ClaimRequest(address=ALICE))
        assert result.code == generate_codes(SEED, 10)[0]

    def test_update_new_instance_gets_initial_state(self):
        self.service.create_claim(code_claim(), OWNER)
        raw = self._update_raw()
        raw["plugins"].insert(0, {"pluginId": "ip", "publicParams": {"maxUsesPerIp": 1}})
        updated = self.service.update_claim("claim-1", raw, OWNER)
        assert updated.plugin_state("ip") == {"ips_used": {}}

    def test_assign_method_immutable(self):
        self.service.create_claim(code_claim(), OWNER)
        with pytest.raises(ConfigurationError, match="Cannot update assign method"):
            self.service.update_claim("claim-1", self._update_raw(assignMethod="numUses"), OWNER)

    def test_update_requires_owner(self):
        self.service.create_claim(code_claim(), OWNER)
        with pytest.raises(PermissionDenied):
            self.service.update_claim("claim-1", self._update_raw(), "bb1mallory")

    def test_update_bumps_last_updated(self):
        self.service.create_claim(code_claim(), OWNER)
        self.clock.now = NOW_MS + 500
        updated = self.service.update_claim("claim-1", self._update_raw(), OWNER)
        assert updated.last_updated == NOW_MS + 500
        assert updated.created_at == NOW_MS

    def test_delete(self):
        self.service.create_claim(code_claim(), OWNER)
        with pytest.raises(PermissionDenied):
            self.service.delete_claim("claim-1", ALICE)
        self.service.delete_claim("claim-1", OWNER)
        result = self.service.attempt_claim("claim-1", ClaimRequest(address=ALICE))
        assert result.error == "Claim claim-1 not found"
        assert self.service.get_claims(["claim-1"]) == []

    # =========================================================================
    # 4. VIEWS
    # =========================================================================

    def test_private_params_redacted(self):
        self.service.create_claim(code_claim(plugins=[
            {"pluginId": "password", "privateParams": {"password": "pw"}}]), OWNER)
        [public] = self.service.get_claims(["claim-1"], viewer=ALICE, include_private_params=True)
        assert public["plugins"][0]["private_params"] == {}
        assert public["action"]["codes"] == {"codes": [], "seed_code": ""}
        assert "state" not in public and "claim_attempts" not in public

        [owner] = self.service.get_claims(["claim-1"], viewer=OWNER, include_private_params=True)
        assert owner["plugins"][0]["private_params"] == {"password": "pw"}
        assert owner["action"]["codes"]["seed_code"] == SEED

    def test_public_state_shown(self):
        self.service.create_claim(code_claim(), OWNER)
        self.service.attempt_claim("claim-1", ClaimRequest(address=ALICE))
        [view] = self.service.get_claims(["claim-1"])
        assert view["plugins"][0]["public_state"]["claimed_users"] == {ALICE: [0]}

    def test_private_list_state_hidden(self):
        self.lists.put(AddressList("L", [], created_by=OWNER, private=True))
        raw = {"claimId": "list-claim", "action": {"addToList": {"listId": "L"}},
               "plugins": [num_uses()]}
        self.service.create_claim(raw, OWNER)
        self.service.attempt_claim("list-claim", ClaimRequest(address=ALICE))

        [hidden] = self.service.get_claims(["list-claim"], viewer=BOB)
        assert hidden["plugins"][0]["public_state"] == {"claimed_users": {}, "num_uses": 0}
        [shown] = self.service.get_claims(["list-claim"], viewer=OWNER)
        assert shown["plugins"][0]["public_state"]["num_uses"] == 1

    def test_viewable_with_link(self):
        self.lists.put(AddressList("L", [], created_by=OWNER, viewable_with_link=True))
        raw = {"claimId": "list-claim", "action": {"addToList": {"listId": "L"}},
               "plugins": [num_uses()]}
        self.service.create_claim(raw, OWNER)
        self.service.attempt_claim("list-claim", ClaimRequest(address=ALICE))
        [without] = self.service.get_claims(["list-claim"], viewer=BOB)
        [with_link] = self.service.get_claims(["list-claim"], viewer=BOB, list_id="L")
        assert without["plugins"][0]["public_state"]["num_uses"] == 0
        assert with_link["plugins"][0]["public_state"]["num_uses"] == 1

    # =========================================================================
    # 5. ATTEMPTS
    # =========================================================================

    def test_stale_fetch_rejected(self):
        self.service.create_claim(code_claim(), OWNER)
        result = self.service.attempt_claim(
            "claim-1", ClaimRequest(address=ALICE, fetched_at=NOW_MS - 1))
        assert result.error == "Claim has been updated since last fetch"

    def test_manual_distribution(self):
        self.service.create_claim({"claimId": "m", "manualDistribution": True,
                                   "plugins": [num_uses()]}, OWNER)
        result = self.service.attempt_claim("m", ClaimRequest(address=ALICE))
        assert result.error == "This claim is for manual distribution only."

    def test_simulate_writes_nothing(self):
        self.service.create_claim(code_claim(), OWNER)
        assert self.service.simulate_claim("claim-1", ClaimRequest(address=ALICE)).success
        assert self._state()["numUses"]["num_uses"] == 0
        assert self.store.get("claim-1")["claim_attempts"] == {}

    def test_simulate_reports_failure(self):
        self.service.create_claim(code_claim(plugins=[{"pluginId": "halt"}]), OWNER)
        result = self.service.simulate_claim("claim-1", ClaimRequest(address=ALICE))
        assert not result.success and "Claim halted" in result.error

    def test_retry_with_same_attempt_id_replays_code(self):
        self.service.create_claim(code_claim(), OWNER)
        first = self.service.attempt_claim("claim-1", ClaimRequest(address=ALICE, attempt_id="t1"))
        again = self.service.attempt_claim("claim-1", ClaimRequest(address=ALICE, attempt_id="t1"))
        assert again.success
        assert again.code == first.code and again.claim_number == first.claim_number
        assert self._state()["numUses"]["num_uses"] == 1

    def test_attempt_id_reused_by_other_address(self):
        self.service.create_claim(code_claim(), OWNER)
        self.service.attempt_claim("claim-1", ClaimRequest(address=ALICE, attempt_id="t1"))
        other = self.service.attempt_claim("claim-1", ClaimRequest(address=BOB, attempt_id="t1"))
        assert not other.success and "Claim attempt id already used" in other.error

    def test_attempt_status(self):
        self.service.create_claim(code_claim(), OWNER)
        result = self.service.attempt_claim("claim-1", ClaimRequest(address=ALICE))
        status = self.service.get_attempt_status("claim-1", result.attempt_id)
        assert status == {"success": True, "claim_number": 0, "delivered": True}
        assert self.service.get_attempt_status("claim-1", "unknown") is None

    def test_result_to_dict(self):
        self.service.create_claim(code_claim(), OWNER)
        out = self.service.attempt_claim("claim-1", ClaimRequest(address=ALICE)).to_dict()
        assert out["success"] is True and out["claim_number"] == 0
        assert out["prev_codes"] == [] and "error" not in out

    # =========================================================================
    # 6. REWARDS
    # =========================================================================

    def test_incremented_balances(self):
        raw = {
            "claimId": "bal",
            "collectionId": 7,
            "action": {"balancesToSet": {"incrementedBalances": {
                "startBalances": [{"amount": 1, "badgeIds": [{"start": 1, "end": 1}],
                                   "ownershipTimes": [{"start": 1, "end": MAX_UINT64}]}],
                "incrementBadgeIdsBy": 1,
            }}},
            "plugins": [num_uses()],
        }
        self.service.create_claim(raw, OWNER)
        assert self.service.attempt_claim("bal", ClaimRequest(address=ALICE)).success
        assert self.service.attempt_claim("bal", ClaimRequest(address=BOB)).success
        assert self.balances.get_balances(7, BOB) == [
            Balance(1, [UintRange(2, 2)], [UintRange(1, MAX_UINT64)])]

    def test_manual_balances(self):
        raw = {
            "claimId": "bal",
            "collectionId": 7,
            "action": {"balancesToSet": {"manualBalances": [
                {"balances": [{"amount": 5, "badgeIds": [{"start": 9, "end": 9}],
                               "ownershipTimes": [{"start": 1, "end": 10}]}]},
            ]}},
            "plugins": [num_uses(max_uses=1)],
        }
        self.service.create_claim(raw, OWNER)
        assert self.service.attempt_claim("bal", ClaimRequest(address=ALICE)).success
        assert self.balances.get_balances(7, ALICE) == [
            Balance(5, [UintRange(9, 9)], [UintRange(1, 10)])]

    @staticmethod
    def _manual_balance_claim(num_sets, max_uses):
        sets = [{"balances": [{"amount": 1, "badgeIds": [{"start": i + 1, "end": i + 1}],
                               "ownershipTimes": [{"start": 1, "end": 10}]}]}
                for i in range(num_sets)]
        return {"claimId": "bal", "collectionId": 7,
                "action": {"balancesToSet": {"manualBalances": sets}},
                "plugins": [num_uses(max_uses=max_uses)]}

    def test_balance_layout_checked_at_creation(self):
        with pytest.raises(ConfigurationError, match="manual balance sets"):
            self.service.create_claim(self._manual_balance_claim(1, 5), OWNER)
        with pytest.raises(ConfigurationError):
            self.service.create_claim(self._manual_balance_claim(1, 0), OWNER)
        with pytest.raises(ConfigurationError):
            self.service.create_claim({"claimId": "bal", "action": {"balancesToSet": {}},
                                       "plugins": [num_uses()]}, OWNER)
        assert self.store.get("bal") is None

    def test_undeliverable_reward_is_a_failed_result(self):
        self.service.create_claim(self._manual_balance_claim(2, 2), OWNER)
        doc = self.store.get("bal")
        doc["action"]["balances_to_set"]["manual_balances"] = \
            doc["action"]["balances_to_set"]["manual_balances"][:1]
        self.store.put(doc)

        first = self.service.attempt_claim("bal", ClaimRequest(address=ALICE))
        second = self.service.attempt_claim("bal", ClaimRequest(address=BOB))
        assert first.success
        assert not second.success
        assert "Reward delivery failed" in second.error
        assert second.claim_number == 1
        assert self.service.get_attempt_status("bal", second.attempt_id)["delivered"] is False
        assert self.service.redeliver_pending("bal") == 0

    def test_add_to_list_and_redelivery(self):
        raw = {"claimId": "list-claim", "action": {"addToList": {"listId": "late"}},
               "plugins": [num_uses()]}
        self.service.create_claim(raw, OWNER)

        pending = self.service.attempt_claim("list-claim", ClaimRequest(address=ALICE))
        assert not pending.success
        assert "Reward delivery pending" in pending.error
        assert self.service.get_attempt_status("list-claim", pending.attempt_id)["delivered"] is False

        self.lists.put(AddressList("late", []))
        assert self.service.redeliver_pending("list-claim") == 1
        assert self.lists.get_list("late").addresses == [ALICE]
        assert self.service.get_attempt_status("list-claim", pending.attempt_id)["delivered"] is True
        assert self.service.redeliver_pending("list-claim") == 0

    # =========================================================================
    # 7. PASSWORD / RESERVED CODES
    # =========================================================================

    def test_password_redeems_next_code(self):
        self.service.create_claim(code_claim(plugins=[
            {"pluginId": "password", "privateParams": {"password": "pw"}}]), OWNER)
        codes = generate_codes(SEED, 10)
        first = self.service.redeem_password_code("claim-1", ALICE, "pw")
        second = self.service.redeem_password_code("claim-1", BOB, "pw")
        wrong = self.service.redeem_password_code("claim-1", ALICE, "nope")
        assert (first.code, second.code) == (codes[0], codes[1])
        assert "Incorrect password" in wrong.error
        assert "claim-1" in self.service.context.mutexes

    def test_password_path_requires_password_plugin(self):
        self.service.create_claim(code_claim(), OWNER)
        result = self.service.redeem_password_code("claim-1", ALICE, "pw")
        assert result.error == "Invalid configuration"

    def test_reserved_codes(self):
        self.service.create_claim(code_claim(), OWNER)
        self.service.attempt_claim("claim-1", ClaimRequest(address=BOB))
        self.service.attempt_claim("claim-1", ClaimRequest(address=ALICE))
        self.service.attempt_claim("claim-1", ClaimRequest(address=ALICE))
        codes = generate_codes(SEED, 10)
        assert self.service.get_reserved_codes("claim-1", ALICE) == [codes[1], codes[2]]
        assert self.service.get_reserved_codes("claim-1", "bb1nobody") == []

    def test_reserved_codes_only_for_code_claims(self):
        raw = {"claimId": "list-claim", "action": {"addToList": {"listId": "L"}},
               "plugins": [num_uses()]}
        self.service.create_claim(raw, OWNER)
        with pytest.raises(ValidationFailure):
            self.service.get_reserved_codes("list-claim", ALICE)
