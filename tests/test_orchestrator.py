"""
Tests for the goal service: attesting days, review, refunds and goal creation.

Gateway and store are fakes; every money movement is checked through the
fake gateway's call log.
"""

import asyncio
from datetime import date, timedelta
from decimal import Decimal

import pytest

from goalstake.config import get_settings
from goalstake.ledger import InvalidStateTransitionError
from goalstake.models.goal import (
    CompletionRecord,
    CompletionStatus,
    Frequency,
    VerificationMethod,
)
from goalstake.orchestrator import (
    CompletionWindowError,
    GoalNotFoundError,
    GoalServiceError,
    create_app_components,
)
from goalstake.services.payments import GatewayError
from goalstake.services.storage import PersistenceError, encode_goal


START = date(2024, 9, 2)
END = date(2024, 9, 8)


def day(offset: int) -> date:
    return START + timedelta(days=offset)


def photo_goal(goal_factory):
    return goal_factory(verification_method=VerificationMethod.PHOTO_ATTESTED)


class TestAddCompletion:
    """Tests for attesting a day."""

    def test_self_attested_day_is_refunded(self, goal_factory, harness_factory):
        """Self-verify goes straight to verified and the refund follows."""
        harness = harness_factory(day(2), [goal_factory()])

        async def scenario():
            await harness.sync()
            return await harness.service.add_completion("goal-1", day(2))

        result = asyncio.run(scenario())

        assert result.status == CompletionStatus.REFUNDED
        assert harness.gateway.refund_calls == [("pi_123", 1000)]
        assert harness.service.goal_progress("goal-1").earned_amount == Decimal("10")
        assert harness.remote_completions()["2024-09-04"]["status"] == "refunded"

    def test_refunded_day_survives_reconciliation(self, goal_factory, harness_factory):
        """Attest day 3, refund, then reconcile after the goal ends."""
        harness = harness_factory(day(2), [goal_factory()], backdating_window_days=0)

        async def scenario():
            await harness.sync()
            await harness.service.add_completion("goal-1", day(2))
            harness.clock.set(END + timedelta(days=1))
            await harness.service.reconcile()

        asyncio.run(scenario())

        ledger = harness.coordinator.get_ledger("goal-1")
        assert ledger.get(day(2)).status == CompletionStatus.REFUNDED
        assert ledger.earned_amount() == Decimal("10")
        assert len(ledger) == 7
        assert ledger.completed_count() == 1
        assert harness.service.current_balance() == Decimal("-60")

    def test_photo_goal_waits_for_review(self, goal_factory, harness_factory):
        harness = harness_factory(day(0), [photo_goal(goal_factory)])

        async def scenario():
            await harness.sync()
            return await harness.service.add_completion(
                "goal-1", day(0), verification_photo_url="https://img/1.jpg"
            )

        result = asyncio.run(scenario())

        assert result.status == CompletionStatus.PENDING_VERIFICATION
        assert harness.gateway.refund_calls == []

    def test_photo_goal_requires_photo(self, goal_factory, harness_factory):
        harness = harness_factory(day(0), [photo_goal(goal_factory)])

        async def scenario():
            await harness.sync()
            await harness.service.add_completion("goal-1", day(0))

        with pytest.raises(GoalServiceError):
            asyncio.run(scenario())

    @pytest.mark.parametrize("target", [
        day(3),                      # tomorrow
        START - timedelta(days=1),   # before the goal
        day(0),                      # older than the back-dating window
    ])
    def test_window(self, goal_factory, harness_factory, target):
        harness = harness_factory(day(2), [goal_factory()])

        async def scenario():
            await harness.sync()
            await harness.service.add_completion("goal-1", target)

        with pytest.raises(CompletionWindowError):
            asyncio.run(scenario())

    def test_unknown_goal(self, harness_factory):
        harness = harness_factory(day(0))
        with pytest.raises(GoalNotFoundError):
            asyncio.run(harness.service.add_completion("nope", day(0)))

    def test_repeat_attestation_is_noop(self, goal_factory, harness_factory):
        harness = harness_factory(day(0), [goal_factory()])

        async def scenario():
            await harness.sync()
            first = await harness.service.add_completion("goal-1", day(0))
            second = await harness.service.add_completion("goal-1", day(0))
            return first, second

        first, second = asyncio.run(scenario())

        assert first == second
        assert first.status == CompletionStatus.REFUNDED
        assert len(harness.gateway.refund_calls) == 1

    def test_attestation_replaces_missed(self, goal_factory, harness_factory):
        """Yesterday was backfilled as missed; a late attestation wins."""
        harness = harness_factory(day(1), [goal_factory()], auto_refund=False)

        async def scenario():
            await harness.sync()
            assert harness.coordinator.get_ledger("goal-1").get(day(0)).is_synthesized
            return await harness.service.add_completion("goal-1", day(0))

        result = asyncio.run(scenario())

        assert result.status == CompletionStatus.VERIFIED
        assert harness.remote_completions()["2024-09-02"]["status"] == "verified"

    def test_remote_missed_entry_is_overwritten(self, goal_factory, harness_factory):
        """Another client backfilled the day after our last snapshot."""
        goal = goal_factory()
        harness = harness_factory(day(1), auto_refund=False)
        harness.store.put_document(encode_goal(goal))

        async def scenario():
            await harness.coordinator.apply_snapshot(harness.store.snapshot())
            missed = CompletionRecord(goal_id=goal.id, day=day(1), status=CompletionStatus.MISSED)
            harness.store.put_document(encode_goal(goal, [
                harness.coordinator.get_ledger("goal-1").get(day(0)),
                missed,
            ]))
            return await harness.service.add_completion("goal-1", day(1))

        result = asyncio.run(scenario())

        assert result.status == CompletionStatus.VERIFIED
        assert harness.remote_completions()["2024-09-03"]["status"] == "verified"

    def test_remote_real_record_wins_collision(self, goal_factory, harness_factory):
        goal = photo_goal(goal_factory)
        harness = harness_factory(day(0), [goal])
        remote = CompletionRecord(
            goal_id=goal.id, day=day(0), status=CompletionStatus.VERIFIED,
        )

        async def scenario():
            await harness.sync()
            harness.store.put_document(encode_goal(goal, [remote]))
            return await harness.service.add_completion(
                "goal-1", day(0), verification_photo_url="https://img/2.jpg"
            )

        result = asyncio.run(scenario())

        assert result == remote
        ledger = harness.coordinator.get_ledger("goal-1")
        assert ledger.get(day(0)).status == CompletionStatus.VERIFIED
        assert harness.remote_completions()["2024-09-02"]["status"] == "verified"

    def test_failed_write_applies_nothing(self, goal_factory, harness_factory):
        harness = harness_factory(day(0), [goal_factory()])

        async def scenario():
            await harness.sync()
            harness.store.fail_all_writes = True
            await harness.service.add_completion("goal-1", day(0))

        with pytest.raises(PersistenceError):
            asyncio.run(scenario())

        assert day(0) not in harness.coordinator.get_ledger("goal-1")
        assert harness.gateway.refund_calls == []

    def test_x_of_n_sixth_completion_accepted(self, goal_factory, harness_factory):
        """10-day range, 5 per success, 25 committed -> 5 required; a 6th is fine."""
        goal = goal_factory(
            frequency=Frequency.X_OF_N_DAYS,
            amount_per_success=Decimal("5"),
            end_date=START + timedelta(days=9),
            total_amount=Decimal("25"),
        )
        harness = harness_factory(day(0), [goal])

        async def scenario():
            await harness.sync()
            for offset in range(5):
                harness.clock.set(day(offset))
                await harness.service.add_completion("goal-1", day(offset))
            progress = harness.service.goal_progress("goal-1")
            harness.clock.set(day(5))
            sixth = await harness.service.add_completion("goal-1", day(5))
            return progress, sixth

        progress, sixth = asyncio.run(scenario())

        assert progress.required_completions == 5
        assert progress.completed_count == 5
        assert progress.ratio_label == "5/5"
        assert progress.is_complete
        assert sixth.status == CompletionStatus.REFUNDED
        assert harness.service.goal_progress("goal-1").completed_count == 6


class TestStatusUpdates:
    """Tests for review transitions."""

    def test_approval_triggers_single_refund(self, goal_factory, harness_factory):
        """A duplicated 'verified' notification refunds once."""
        harness = harness_factory(day(0), [photo_goal(goal_factory)])

        async def scenario():
            await harness.sync()
            await harness.service.add_completion(
                "goal-1", day(0), verification_photo_url="https://img/1.jpg"
            )
            first = await harness.service.update_completion_status(
                "goal-1", day(0), CompletionStatus.VERIFIED
            )
            second = await harness.service.update_completion_status(
                "goal-1", day(0), CompletionStatus.VERIFIED
            )
            return first, second

        first, second = asyncio.run(scenario())

        assert first.status == CompletionStatus.REFUNDED
        assert second.status == CompletionStatus.REFUNDED
        assert len(harness.gateway.refund_calls) == 1

    def test_rejection(self, goal_factory, harness_factory):
        harness = harness_factory(day(0), [photo_goal(goal_factory)])

        async def scenario():
            await harness.sync()
            await harness.service.add_completion(
                "goal-1", day(0), verification_photo_url="https://img/1.jpg"
            )
            return await harness.service.update_completion_status(
                "goal-1", day(0), CompletionStatus.REJECTED
            )

        result = asyncio.run(scenario())

        assert result.status == CompletionStatus.REJECTED
        assert harness.remote_completions()["2024-09-02"]["status"] == "rejected"

    def test_refund_status_cannot_be_set_directly(self, goal_factory, harness_factory):
        harness = harness_factory(day(0), [goal_factory()], auto_refund=False)

        async def scenario():
            await harness.sync()
            await harness.service.add_completion("goal-1", day(0))
            await harness.service.update_completion_status(
                "goal-1", day(0), CompletionStatus.REFUNDED
            )

        with pytest.raises(InvalidStateTransitionError):
            asyncio.run(scenario())
        assert harness.gateway.refund_calls == []


class TestTriggerRefund:
    """Tests for the refund path."""

    @pytest.mark.parametrize("status", [
        CompletionStatus.PENDING_VERIFICATION,
        CompletionStatus.MISSED,
        CompletionStatus.REJECTED,
    ])
    def test_guard_blocks_gateway(self, goal_factory, harness_factory, status):
        goal = goal_factory()
        harness = harness_factory(day(0))
        harness.store.put_document(encode_goal(goal, [
            CompletionRecord(goal_id=goal.id, day=day(0), status=status),
        ]))

        async def scenario():
            await harness.sync()
            await harness.service.trigger_refund("goal-1", day(0))

        with pytest.raises(InvalidStateTransitionError):
            asyncio.run(scenario())
        assert len(harness.gateway.refund_calls) == 0

    def test_gateway_failure_then_retry(self, goal_factory, harness_factory):
        harness = harness_factory(day(0), [goal_factory()])
        harness.gateway.refund_error = GatewayError("card_declined")

        async def scenario():
            await harness.sync()
            failed = await harness.service.add_completion("goal-1", day(0))
            harness.gateway.refund_error = None
            retried = await harness.service.trigger_refund("goal-1", day(0))
            return failed, retried

        failed, retried = asyncio.run(scenario())

        assert failed.status == CompletionStatus.REFUND_FAILED
        assert failed.refund_error == "card_declined"
        assert retried.refunded
        assert retried.status == CompletionStatus.REFUNDED
        assert len(harness.gateway.refund_calls) == 2
        stored = harness.remote_completions()["2024-09-02"]
        assert stored["status"] == "refunded"
        assert "refundError" not in stored or stored["refundError"] is None

    def test_timeout_becomes_refund_failed(self, goal_factory, harness_factory):
        harness = harness_factory(day(0), [goal_factory()], auto_refund=False, gateway_timeout=0.05)
        harness.gateway.delay = 1.0

        async def scenario():
            await harness.sync()
            await harness.service.add_completion("goal-1", day(0))
            return await harness.service.trigger_refund("goal-1", day(0))

        outcome = asyncio.run(scenario())

        assert not outcome.refunded
        assert outcome.status == CompletionStatus.REFUND_FAILED
        assert "timed out" in outcome.error
        ledger = harness.coordinator.get_ledger("goal-1")
        assert ledger.get(day(0)).status == CompletionStatus.REFUND_FAILED
        assert ledger.earned_amount() == Decimal("0")

    def test_concurrent_triggers_refund_once(self, goal_factory, harness_factory):
        harness = harness_factory(day(0), [goal_factory()], auto_refund=False)

        async def scenario():
            await harness.sync()
            await harness.service.add_completion("goal-1", day(0))
            return await asyncio.gather(
                harness.service.trigger_refund("goal-1", day(0)),
                harness.service.trigger_refund("goal-1", day(0)),
            )

        first, second = asyncio.run(scenario())

        assert len(harness.gateway.refund_calls) == 1
        assert first.refunded and not first.already_processed
        assert second.already_processed

    def test_missing_payment_reference_fails_refund(self, goal_factory, harness_factory):
        harness = harness_factory(day(0), [goal_factory(payment_intent_id=None)])

        async def scenario():
            await harness.sync()
            return await harness.service.add_completion("goal-1", day(0))

        result = asyncio.run(scenario())

        assert result.status == CompletionStatus.REFUND_FAILED
        assert harness.gateway.refund_calls == []

    def test_status_write_failure_after_refund_is_kept_locally(self, goal_factory, harness_factory):
        harness = harness_factory(day(0), [goal_factory()], auto_refund=False)

        async def scenario():
            await harness.sync()
            await harness.service.add_completion("goal-1", day(0))
            harness.store.fail_all_writes = True
            return await harness.service.trigger_refund("goal-1", day(0))

        outcome = asyncio.run(scenario())

        assert outcome.refunded
        assert not outcome.persisted
        assert harness.coordinator.is_dirty("goal-1", day(0))
        assert harness.coordinator.get_ledger("goal-1").get(day(0)).status == CompletionStatus.REFUNDED
        assert harness.remote_completions()["2024-09-02"]["status"] == "verified"

    def test_unsaved_refund_is_not_repeated(self, goal_factory, harness_factory):
        """A refunded day whose status write failed still counts as refunded."""
        harness = harness_factory(day(0), [goal_factory()], auto_refund=False)

        async def scenario():
            await harness.sync()
            await harness.service.add_completion("goal-1", day(0))
            harness.store.fail_all_writes = True
            await harness.service.trigger_refund("goal-1", day(0))
            return await harness.service.trigger_refund("goal-1", day(0))

        again = asyncio.run(scenario())

        assert again.already_processed
        assert again.status == CompletionStatus.REFUNDED
        assert len(harness.gateway.refund_calls) == 1

    def test_unexpected_gateway_error_is_retryable(self, goal_factory, harness_factory):
        harness = harness_factory(day(0), [goal_factory()], auto_refund=False)
        harness.gateway.refund_error = RuntimeError("socket reset")

        async def scenario():
            await harness.sync()
            await harness.service.add_completion("goal-1", day(0))
            failed = await harness.service.trigger_refund("goal-1", day(0))
            harness.gateway.refund_error = None
            retried = await harness.service.trigger_refund("goal-1", day(0))
            return failed, retried

        failed, retried = asyncio.run(scenario())

        assert not failed.refunded
        assert failed.status == CompletionStatus.REFUND_FAILED
        assert failed.error == "socket reset"
        assert retried.refunded
        assert not retried.already_processed
        assert retried.status == CompletionStatus.REFUNDED
        assert len(harness.gateway.refund_calls) == 2
        assert harness.remote_completions()["2024-09-02"]["status"] == "refunded"

    def test_claim_is_dropped_after_refund(self, goal_factory, harness_factory):
        harness = harness_factory(day(0), [goal_factory()])

        async def scenario():
            await harness.sync()
            return await harness.service.add_completion("goal-1", day(0))

        refunded = asyncio.run(scenario())

        assert refunded.status == CompletionStatus.REFUNDED
        assert harness.state_machine.claim_refund(refunded)


class TestTwoClients:
    """Two devices on one account: the store's record decides, money moves once."""

    def test_stale_missed_day_does_not_refund_twice(self, goal_factory, harness_factory):
        first = harness_factory(day(3), [goal_factory()])
        second = first.another_client()

        async def scenario():
            await first.sync()
            await second.sync()
            assert second.coordinator.get_ledger("goal-1").get(day(2)).status == (
                CompletionStatus.MISSED
            )
            await first.service.add_completion("goal-1", day(2))
            return await second.service.add_completion("goal-1", day(2))

        result = asyncio.run(scenario())

        assert result.status == CompletionStatus.REFUNDED
        assert len(first.gateway.refund_calls) == 1
        assert second.coordinator.get_ledger("goal-1").get(day(2)).status == (
            CompletionStatus.REFUNDED
        )
        assert first.remote_completions()["2024-09-04"]["status"] == "refunded"

    def test_stale_missed_day_is_still_attestable(self, goal_factory, harness_factory):
        first = harness_factory(day(3), [goal_factory()], auto_refund=False)
        second = first.another_client()

        async def scenario():
            await first.sync()
            await second.sync()
            return await second.service.add_completion("goal-1", day(2))

        result = asyncio.run(scenario())

        assert result.status == CompletionStatus.VERIFIED
        assert first.remote_completions()["2024-09-04"]["status"] == "verified"

    def test_refund_from_stale_verified_day_happens_once(self, goal_factory, harness_factory):
        first = harness_factory(day(0), [goal_factory()], auto_refund=False)
        second = first.another_client()

        async def scenario():
            await first.sync()
            await second.sync()
            await first.service.add_completion("goal-1", day(0))
            await second.sync()
            assert second.coordinator.get_ledger("goal-1").get(day(0)).status == (
                CompletionStatus.VERIFIED
            )
            await first.service.trigger_refund("goal-1", day(0))
            return await second.service.trigger_refund("goal-1", day(0))

        outcome = asyncio.run(scenario())

        assert outcome.already_processed
        assert outcome.refunded
        assert len(first.gateway.refund_calls) == 1
        assert second.coordinator.get_ledger("goal-1").get(day(0)).status == (
            CompletionStatus.REFUNDED
        )

    def test_stale_review_does_not_refund_twice(self, goal_factory, harness_factory):
        first = harness_factory(day(0), [photo_goal(goal_factory)])
        second = first.another_client()

        async def scenario():
            await first.sync()
            await first.service.add_completion(
                "goal-1", day(0), verification_photo_url="https://img/1.jpg"
            )
            await second.sync()
            await first.service.update_completion_status(
                "goal-1", day(0), CompletionStatus.VERIFIED
            )
            return await second.service.update_completion_status(
                "goal-1", day(0), CompletionStatus.VERIFIED
            )

        result = asyncio.run(scenario())

        assert result.status == CompletionStatus.REFUNDED
        assert len(first.gateway.refund_calls) == 1
        assert first.remote_completions()["2024-09-02"]["status"] == "refunded"


class TestCreateGoal:
    """Tests for goal creation and funding."""

    def test_creates_charge_and_document(self, harness_factory):
        harness = harness_factory(START)

        goal, charge = asyncio.run(harness.service.create_goal(
            title="Meditate",
            frequency=Frequency.DAILY,
            amount_per_success=Decimal("10"),
            start_date=START,
            end_date=END,
            verification_method=VerificationMethod.SELF_ATTESTED,
        ))

        assert goal.total_amount == Decimal("70")
        assert goal.payment_intent_id == charge.payment_reference
        assert harness.gateway.charge_calls == [(7000, "USD")]
        assert harness.store.document(goal.id)["paymentIntentId"] == charge.payment_reference
        assert harness.coordinator.get_goal(goal.id) == goal
        assert harness.service.current_balance() == Decimal("-70")

    def test_x_of_n_goal_uses_target(self, harness_factory):
        harness = harness_factory(START)

        goal, _ = asyncio.run(harness.service.create_goal(
            title="Swim",
            frequency=Frequency.X_OF_N_DAYS,
            amount_per_success=Decimal("5"),
            start_date=START,
            end_date=START + timedelta(days=9),
            verification_method=VerificationMethod.PHOTO_ATTESTED,
            target_completions=5,
        ))

        assert goal.total_amount == Decimal("25")
        assert harness.service.goal_progress(goal.id).required_completions == 5

    def test_failed_charge_stores_nothing(self, harness_factory):
        harness = harness_factory(START)
        harness.gateway.charge_error = GatewayError("server down")

        with pytest.raises(GatewayError):
            asyncio.run(harness.service.create_goal(
                title="Meditate",
                frequency=Frequency.DAILY,
                amount_per_success=Decimal("10"),
                start_date=START,
                end_date=END,
                verification_method=VerificationMethod.SELF_ATTESTED,
            ))

        assert harness.coordinator.goals() == []
        assert harness.store.snapshot().documents == []

    def test_goal_without_obligated_days(self, harness_factory):
        harness = harness_factory(START)

        with pytest.raises(GoalServiceError):
            asyncio.run(harness.service.create_goal(
                title="Weekend hike",
                frequency=Frequency.WEEKENDS,
                amount_per_success=Decimal("10"),
                start_date=START,
                end_date=START + timedelta(days=4),
                verification_method=VerificationMethod.SELF_ATTESTED,
            ))
        assert harness.gateway.charge_calls == []


class TestAppComponents:
    """Tests for the component factory."""

    def test_in_memory_wiring_uses_resubscribe_backoff(self, monkeypatch, harness_factory):
        monkeypatch.setenv("GOALSTAKE_SNAPSHOT_POLL_SECONDS", "30")
        monkeypatch.setenv("GOALSTAKE_RESUBSCRIBE_SECONDS", "2.5")
        get_settings.cache_clear()
        try:
            service, coordinator, sheets_client = create_app_components(
                "user-1", use_storage=False, gateway=harness_factory(START).gateway
            )
        finally:
            get_settings.cache_clear()

        assert sheets_client is None
        assert coordinator.user_id == "user-1"
        assert coordinator._resubscribe_seconds == 2.5
        assert service.projection().goals == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
