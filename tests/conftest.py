"""
Shared fixtures for Goalstake tests.

No real API calls: the store is in memory and the gateway is a fake
that records every call.
"""

import asyncio
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Iterable, Optional

import pytest

from goalstake.audit import AuditLogger
from goalstake.clock import FixedClock
from goalstake.config import LedgerSettings
from goalstake.ledger import CompletionStateMachine
from goalstake.models.goal import (
    ChargeResult,
    Frequency,
    Goal,
    VerificationMethod,
)
from goalstake.orchestrator import GoalService
from goalstake.reconciliation import ReconciliationEngine
from goalstake.services.payments import PaymentGatewayInterface
from goalstake.services.storage import (
    InMemoryGoalDocumentStore,
    PersistenceError,
    encode_goal,
)
from goalstake.sync import SyncCoordinator


USER_ID = "user-1"

# A Monday; START .. START + 6 is one full week
START = date(2024, 9, 2)


def make_goal(**overrides) -> Goal:
    data: dict[str, Any] = dict(
        id="goal-1",
        user_id=USER_ID,
        title="Exercise",
        frequency=Frequency.DAILY,
        amount_per_success=Decimal("10"),
        currency="USD",
        start_date=START,
        end_date=START + timedelta(days=6),
        total_amount=Decimal("70"),
        verification_method=VerificationMethod.SELF_ATTESTED,
        payment_intent_id="pi_123",
    )
    data.update(overrides)
    return Goal(**data)


class FakeGateway(PaymentGatewayInterface):
    """Records calls; fails or stalls on request."""

    def __init__(self):
        self.refund_calls: list[tuple[str, int]] = []
        self.charge_calls: list[tuple[int, str]] = []
        self.refund_error: Optional[Exception] = None
        self.charge_error: Optional[Exception] = None
        self.delay: float = 0.0

    async def refund(self, payment_reference: str, amount_minor_units: int) -> None:
        self.refund_calls.append((payment_reference, amount_minor_units))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.refund_error is not None:
            raise self.refund_error

    async def create_charge(self, amount_minor_units: int, currency: str) -> ChargeResult:
        self.charge_calls.append((amount_minor_units, currency))
        if self.charge_error is not None:
            raise self.charge_error
        return ChargeResult(
            client_secret=f"secret_{len(self.charge_calls)}",
            payment_reference=f"pi_{len(self.charge_calls)}",
        )


class FlakyStore(InMemoryGoalDocumentStore):
    """In-memory store whose writes can be made to fail per path."""

    def __init__(self, user_id: str = USER_ID, documents: Iterable[dict] = ()):
        super().__init__(user_id, documents)
        self.failing_paths: set[str] = set()
        self.fail_all_writes = False
        self.create_calls: list[str] = []

    def _check(self, paths: Iterable[str]) -> None:
        for path in paths:
            if self.fail_all_writes or any(path.startswith(p) for p in self.failing_paths):
                raise PersistenceError(f"Simulated failure writing {path}")

    async def write_fields(self, goal_id: str, updates: dict[str, Any]) -> bool:
        self._check(updates)
        return await super().write_fields(goal_id, updates)

    async def create_field(self, goal_id: str, path: str, value: Any) -> bool:
        self.create_calls.append(path)
        self._check([path])
        return await super().create_field(goal_id, path, value)


class Harness:
    """Every component wired together around a fixed clock."""

    def __init__(
        self,
        today: date,
        goals: Iterable[Goal] = (),
        auto_refund: bool = True,
        backdating_window_days: int = 1,
        gateway_timeout: float = 1.0,
        store: Optional[FlakyStore] = None,
        gateway: Optional[FakeGateway] = None,
    ):
        self.clock = FixedClock(today)
        self.store = store or FlakyStore(USER_ID, [encode_goal(g) for g in goals])
        self.gateway = gateway or FakeGateway()
        self.state_machine = CompletionStateMachine()
        self.audit = AuditLogger()
        self.engine = ReconciliationEngine(self.store, self.state_machine, self.audit)
        self.coordinator = SyncCoordinator(
            USER_ID, self.store, self.engine, self.clock, audit_logger=self.audit
        )
        self.settings = LedgerSettings(
            _env_file=None,
            auto_refund_verified=auto_refund,
            backdating_window_days=backdating_window_days,
        )
        self.service = GoalService(
            self.coordinator,
            self.store,
            self.gateway,
            self.state_machine,
            self.clock,
            audit_logger=self.audit,
            settings=self.settings,
            gateway_timeout=gateway_timeout,
        )

    async def sync(self):
        return await self.coordinator.apply_snapshot(self.store.snapshot())

    def another_client(self, **overrides) -> "Harness":
        """A second device on the same account: shared store and gateway."""
        overrides.setdefault("auto_refund", self.settings.auto_refund_verified)
        return Harness(self.clock.today(), store=self.store, gateway=self.gateway, **overrides)

    def remote_completions(self, goal_id: str = "goal-1") -> dict[str, Any]:
        return self.store.document(goal_id).get("completions", {})


@pytest.fixture
def goal_factory():
    return make_goal


@pytest.fixture
def harness_factory():
    return Harness
