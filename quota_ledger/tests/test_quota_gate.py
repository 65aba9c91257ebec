"""
Quota gate tests.

Verifies:
- Plan allowance, then purchased credits, then denial
- Lazy window resets (daily calendar, weekly rolling) and no backwards resets
- Unlimited plans never touch purchased credits
- Pro-gated dimensions and upload size caps deny without mutation
- Retrying with the same grant_id never charges twice, and the id is bound
  to one user, one dimension and a bounded number of replays
- Concurrent requests never exceed plan limit + purchased balance
"""
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from quota_ledger.core.errors import ConfigurationError, GrantConflictError, TransientStoreError, ValidationError
from quota_ledger.features.gate import service as gate_service
from quota_ledger.features.gate.service import check_and_consume, usage_snapshot
from quota_ledger.features.ledger.purchases import credit, get_balance
from quota_ledger.features.ledger.transactions import list_transactions
from quota_ledger.features.usage.counters import get_counter
from quota_ledger.models.dimension import Cadence, Dimension
from quota_ledger.models.ledger import TransactionKind, TransactionSource
from quota_ledger.models.plan import PlanTier, UNLIMITED
from quota_ledger.models.usage import DenialCode, GrantSource


T0 = datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)
USER = "user_alice"
MB = 1024 * 1024


class TestDailyAllowance:
    """Free tier text messages: 3 per calendar day."""

    def test_fourth_message_denied_then_allowed_next_day(self):
        for expected_used in (1, 2, 3):
            decision = check_and_consume(USER, "text_message", "free", now=T0)
            assert decision.allowed is True
            assert decision.source == GrantSource.PLAN
            assert decision.used == expected_used

        denied = check_and_consume(USER, "text_message", "free", now=T0 + timedelta(hours=1))
        assert denied.allowed is False
        assert denied.code == DenialCode.LIMIT_EXCEEDED
        assert denied.reason == (
            "You've reached your daily message limit. "
            "Upgrade to Committed for increased limits or purchase additional credits!"
        )

        next_day = check_and_consume(USER, "text_message", "free", now=T0 + timedelta(days=1))
        assert next_day.allowed is True
        assert next_day.used == 1

    def test_reset_bumps_generation(self):
        check_and_consume(USER, Dimension.TEXT_MESSAGE, PlanTier.FREE, now=T0)
        check_and_consume(USER, Dimension.TEXT_MESSAGE, PlanTier.FREE, now=T0 + timedelta(days=1))

        counter = get_counter(USER, Dimension.TEXT_MESSAGE)
        assert counter.generation == 1
        assert counter.used == 1
        assert counter.last_reset == T0 + timedelta(days=1)

    def test_users_are_independent(self):
        for _ in range(3):
            check_and_consume(USER, "text_message", "free", now=T0)

        assert check_and_consume("user_bob", "text_message", "free", now=T0).allowed is True

    def test_denial_does_not_increment(self):
        for _ in range(5):
            check_and_consume(USER, "text_message", "free", now=T0)

        assert get_counter(USER, Dimension.TEXT_MESSAGE).used == 3


class TestRollingAllowance:
    def test_weekly_window_rolls_from_first_use(self):
        assert check_and_consume(USER, "area_message", "free", now=T0).allowed is True
        assert check_and_consume(USER, "area_message", "free", now=T0 + timedelta(days=6)).allowed is False

        decision = check_and_consume(USER, "area_message", "free", now=T0 + timedelta(days=7))
        assert decision.allowed is True
        assert decision.used == 1

    def test_monthly_denial_message(self):
        check_and_consume(USER, "standard_vocalize", "free", now=T0)
        denied = check_and_consume(USER, "standard_vocalize", "free", now=T0)
        assert denied.reason.startswith("You've reached your monthly Standard Vocalize limit.")

    def test_earlier_clock_never_resets(self):
        for _ in range(3):
            check_and_consume(USER, "text_message", "free", now=T0)

        skewed = check_and_consume(USER, "text_message", "free", now=T0 - timedelta(days=2))
        assert skewed.allowed is False
        counter = get_counter(USER, Dimension.TEXT_MESSAGE)
        assert counter.generation == 0
        assert counter.last_reset == T0


class TestLedgerFallback:
    def test_plan_first_then_credits_then_denied(self):
        credit(USER, "area_message", 2, now=T0)

        first = check_and_consume(USER, "area_message", "free", now=T0)
        second = check_and_consume(USER, "area_message", "free", now=T0)
        third = check_and_consume(USER, "area_message", "free", now=T0)
        fourth = check_and_consume(USER, "area_message", "free", now=T0)

        assert (first.allowed, first.source) == (True, GrantSource.PLAN)
        assert (second.allowed, second.source, second.purchased_balance) == (True, GrantSource.LEDGER, 1)
        assert (third.allowed, third.source, third.purchased_balance) == (True, GrantSource.LEDGER, 0)
        assert fourth.allowed is False
        assert fourth.code == DenialCode.LIMIT_EXCEEDED
        assert get_balance(USER, "area_message") == 0

    def test_ledger_draw_leaves_plan_counter_alone(self):
        credit(USER, "area_message", 1, now=T0)
        check_and_consume(USER, "area_message", "free", now=T0)
        check_and_consume(USER, "area_message", "free", now=T0)

        assert get_counter(USER, Dimension.AREA_MESSAGE).used == 1

    def test_transaction_log_records_each_grant(self):
        credit(USER, "area_message", 1, now=T0)
        check_and_consume(USER, "area_message", "free", now=T0)
        check_and_consume(USER, "area_message", "free", now=T0)
        check_and_consume(USER, "area_message", "free", now=T0)  # denied, not logged

        entries = list_transactions(USER)
        assert [(e.kind, e.source, e.deltas) for e in entries] == [
            (TransactionKind.USAGE, TransactionSource.LEDGER, {"area_message": -1}),
            (TransactionKind.USAGE, TransactionSource.PLAN, {"area_message": 1}),
        ]
        assert all(e.grant_id for e in entries)

    def test_unlimited_never_touches_ledger(self):
        credit(USER, "text_message", 5, now=T0)

        for _ in range(40):
            decision = check_and_consume(USER, "text_message", "locked_in", now=T0)
            assert decision.allowed is True
            assert decision.source == GrantSource.PLAN

        assert get_balance(USER, "text_message") == 5
        assert get_counter(USER, Dimension.TEXT_MESSAGE).used == 40


class TestTierGating:
    def test_pro_vocalize_denied_on_free_even_with_credits(self):
        credit(USER, "pro_vocalize", 3, now=T0)

        decision = check_and_consume(USER, "pro_vocalize", "free", now=T0)

        assert decision.allowed is False
        assert decision.code == DenialCode.UPGRADE_REQUIRED
        assert "Upgrade required" in decision.reason
        assert get_balance(USER, "pro_vocalize") == 3
        assert get_counter(USER, Dimension.PRO_VOCALIZE) is None

    def test_pro_vocalize_allowed_on_paid_plan(self):
        decision = check_and_consume(USER, "pro_vocalize", "committed", now=T0)
        assert decision.allowed is True

    def test_legacy_top_tier_gets_larger_pro_allowance(self):
        results = [check_and_consume(USER, "pro_vocalize", "locked_in_legacy", now=T0).allowed for _ in range(8)]
        assert results == [True] * 7 + [False]


class TestUploadSize:
    def test_file_over_plan_cap_denied_without_mutation(self):
        decision = check_and_consume(USER, "document_upload", "free", now=T0, file_size_bytes=21 * MB)

        assert decision.allowed is False
        assert decision.code == DenialCode.FILE_TOO_LARGE
        assert decision.reason == (
            "File size exceeds the 20MB limit for your plan. Please upgrade for larger file uploads."
        )
        assert get_counter(USER, Dimension.DOCUMENT_UPLOAD) is None

    def test_file_at_cap_allowed(self):
        decision = check_and_consume(USER, "document_upload", "free", now=T0, file_size_bytes=20 * MB)
        assert decision.allowed is True

    def test_larger_cap_on_paid_plan(self):
        decision = check_and_consume(USER, "lecture_upload", "committed", now=T0, file_size_bytes=25 * MB)
        assert decision.allowed is True


class TestValidation:
    def test_unknown_dimension(self):
        with pytest.raises(ConfigurationError):
            check_and_consume(USER, "video_call", "free", now=T0)

    def test_unknown_plan(self):
        with pytest.raises(ConfigurationError):
            check_and_consume(USER, "text_message", "platinum", now=T0)


class TestGrantReplay:
    def test_same_grant_id_is_charged_once(self):
        first = check_and_consume(USER, "text_message", "free", now=T0, grant_id="grant-1")
        again = check_and_consume(USER, "text_message", "free", now=T0, grant_id="grant-1")

        assert first.allowed is True
        assert again.allowed is True
        assert again.source == GrantSource.PLAN
        assert again.replayed is True
        assert get_counter(USER, Dimension.TEXT_MESSAGE).used == 1

    def test_replay_after_lost_commit_acknowledgement(self, monkeypatch):
        """The first attempt commits, then the connection drops; the retry must not charge again."""
        original = gate_service._consume
        calls = {"count": 0}

        def commit_then_fail(*args, **kwargs):
            calls["count"] += 1
            result = original(*args, **kwargs)
            if calls["count"] == 1:
                raise OperationalError("COMMIT", {}, Exception("connection reset"))
            return result

        monkeypatch.setattr(gate_service, "_consume", commit_then_fail)

        decision = check_and_consume(USER, "text_message", "free", now=T0)

        assert decision.allowed is True
        assert calls["count"] == 1
        assert get_counter(USER, Dimension.TEXT_MESSAGE).used == 1
        assert len(list_transactions(USER)) == 1

    def test_grant_id_is_used_up_after_replay_allowance(self, test_settings, monkeypatch):
        monkeypatch.setattr(test_settings, "GATE_MAX_GRANT_REPLAYS", 2)

        decisions = [check_and_consume(USER, "text_message", "free", now=T0, grant_id="grant-fixed") for _ in range(3)]

        assert [d.allowed for d in decisions] == [True, True, True]
        assert [d.replayed for d in decisions] == [False, True, True]
        with pytest.raises(GrantConflictError):
            check_and_consume(USER, "text_message", "free", now=T0, grant_id="grant-fixed")
        assert get_counter(USER, Dimension.TEXT_MESSAGE).used == 1

    def test_fixed_grant_id_cannot_exceed_daily_limit(self, test_settings):
        allowed = 0
        for _ in range(10):
            try:
                allowed += check_and_consume(USER, "text_message", "free", now=T0, grant_id="grant-loop").allowed
            except GrantConflictError:
                pass
        fresh = [check_and_consume(USER, "text_message", "free", now=T0).allowed for _ in range(3)]

        assert allowed == 1 + test_settings.GATE_MAX_GRANT_REPLAYS
        assert fresh == [True, True, False]
        assert get_counter(USER, Dimension.TEXT_MESSAGE).used == 3

    def test_other_users_grant_id_is_not_replayed(self):
        check_and_consume("user_bob", "area_message", "free", now=T0, grant_id="bob-grant")

        decision = check_and_consume(USER, "text_message", "free", now=T0, grant_id="bob-grant")

        assert decision.allowed is True
        assert decision.replayed is False
        assert get_counter(USER, Dimension.TEXT_MESSAGE).used == 1
        assert get_counter("user_bob", Dimension.AREA_MESSAGE).used == 1
        assert get_counter("user_bob", Dimension.TEXT_MESSAGE) is None

    def test_other_users_grant_id_does_not_bypass_limit(self):
        check_and_consume("user_bob", "area_message", "free", now=T0, grant_id="bob-grant")

        first = check_and_consume(USER, "area_message", "free", now=T0, grant_id="bob-grant")
        second = check_and_consume(USER, "area_message", "free", now=T0)

        assert first.allowed is True and first.replayed is False
        assert second.allowed is False
        assert second.code == DenialCode.LIMIT_EXCEEDED

    def test_grant_id_reused_for_another_dimension_conflicts(self):
        check_and_consume(USER, "area_message", "free", now=T0, grant_id="grant-area")

        with pytest.raises(GrantConflictError):
            check_and_consume(USER, "text_message", "free", now=T0, grant_id="grant-area")
        assert get_counter(USER, Dimension.TEXT_MESSAGE) is None

    def test_expired_grant_id_conflicts(self, test_settings):
        check_and_consume(USER, "text_message", "free", now=T0, grant_id="grant-old")
        later = T0 + timedelta(seconds=test_settings.GATE_GRANT_REPLAY_SECONDS + 1)

        with pytest.raises(GrantConflictError):
            check_and_consume(USER, "text_message", "free", now=later, grant_id="grant-old")
        assert get_counter(USER, Dimension.TEXT_MESSAGE).used == 1

    @pytest.mark.parametrize("grant_id", ["", "g" * 65])
    def test_invalid_grant_id_rejected(self, grant_id):
        with pytest.raises(ValidationError):
            check_and_consume(USER, "text_message", "free", now=T0, grant_id=grant_id)
        assert get_counter(USER, Dimension.TEXT_MESSAGE) is None

    def test_ledger_grant_replays_as_ledger(self):
        credit(USER, "area_message", 1, now=T0)
        check_and_consume(USER, "area_message", "free", now=T0)
        check_and_consume(USER, "area_message", "free", now=T0, grant_id="grant-ledger")

        again = check_and_consume(USER, "area_message", "free", now=T0, grant_id="grant-ledger")

        assert again.allowed is True
        assert again.source == GrantSource.LEDGER
        assert get_balance(USER, "area_message") == 0


class TestStoreFailures:
    def test_store_outage_fails_closed(self, monkeypatch):
        def unavailable(*args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("database is down"))

        monkeypatch.setattr(gate_service, "ensure_counter", unavailable)

        with pytest.raises(TransientStoreError):
            check_and_consume(USER, "text_message", "free", now=T0)

    def test_persistent_contention_is_transient(self, test_settings, monkeypatch):
        monkeypatch.setattr(test_settings, "STORE_RETRY_ATTEMPTS", 1)
        monkeypatch.setattr(gate_service, "try_increment", lambda *args, **kwargs: None)

        with pytest.raises(TransientStoreError):
            check_and_consume(USER, "text_message", "free", now=T0)


class TestConcurrency:
    def test_grants_never_exceed_limit_plus_balance(self):
        credit(USER, "text_message", 2, now=T0)

        with ThreadPoolExecutor(max_workers=8) as pool:
            decisions = list(
                pool.map(lambda _: check_and_consume(USER, "text_message", "free", now=T0), range(16))
            )

        allowed = [d for d in decisions if d.allowed]
        assert len(allowed) == 5
        assert sum(1 for d in allowed if d.source == GrantSource.PLAN) == 3
        assert sum(1 for d in allowed if d.source == GrantSource.LEDGER) == 2
        assert get_counter(USER, Dimension.TEXT_MESSAGE).used == 3
        assert get_balance(USER, "text_message") == 0


class TestUsageSnapshot:
    def test_snapshot_reports_usage_and_limits(self):
        credit(USER, "area_message", 4, now=T0)
        check_and_consume(USER, "text_message", "free", now=T0)
        check_and_consume(USER, "text_message", "free", now=T0)

        snapshot = usage_snapshot(USER, "free", now=T0)

        text = snapshot["text_message"]
        assert text.used == 2
        assert text.limit == 3
        assert text.remaining == 1
        assert text.window == Cadence.DAILY
        assert text.next_reset_at == datetime(2024, 3, 2, tzinfo=timezone.utc)
        assert snapshot["area_message"].purchased_balance == 4
        assert snapshot["area_message"].used == 0
        assert set(snapshot) == {d.value for d in Dimension}

    def test_elapsed_window_reads_zero_without_mutating(self):
        check_and_consume(USER, "text_message", "free", now=T0)

        snapshot = usage_snapshot(USER, "free", now=T0 + timedelta(days=1))

        assert snapshot["text_message"].used == 0
        counter = get_counter(USER, Dimension.TEXT_MESSAGE)
        assert counter.used == 1
        assert counter.generation == 0

    def test_unlimited_has_no_remaining(self):
        snapshot = usage_snapshot(USER, "locked_in", now=T0)
        assert snapshot["text_message"].limit == UNLIMITED
        assert snapshot["text_message"].remaining is None

    def test_without_plan_limits_are_omitted(self):
        snapshot = usage_snapshot(USER, now=T0)
        assert snapshot["text_message"].limit is None
        assert snapshot["text_message"].remaining is None
