from datetime import datetime
from typing import Any, Callable, Mapping

import pytest
from tablebook.domain.events import NotificationKind, StatusChanged
from tablebook.domain.policy import Actor, ReservationPolicy
from tablebook.infrastructure.locks import ResourceLocks
from tablebook.infrastructure.memory import (
    InMemoryPolicyStore,
    InMemoryReservationRepository,
    InMemoryTableRepository,
)
from tablebook.models import Table, UserRole
from tablebook.usecases.approvals import ApprovalGate
from tablebook.usecases.reservations import ReservationScheduler

# Monday 2026-10-19, 07:00 wall clock.
NOW = datetime(2026, 10, 19, 7, 0)


class RecordingPublisher:
    def __init__(self) -> None:
        self.events: list[StatusChanged] = []

    def publish(self, event: StatusChanged) -> None:
        self.events.append(event)


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[int, NotificationKind, Mapping[str, Any]]] = []

    def notify(self, user_id: int, kind: NotificationKind, payload: Mapping[str, Any]) -> None:
        self.sent.append((user_id, kind, payload))


def at(hour: int, minute: int = 0, *, day: int = 19) -> datetime:
    return datetime(2026, 10, day, hour, minute)


@pytest.fixture
def member() -> Actor:
    return Actor(id=1, role=UserRole.MEMBER)


@pytest.fixture
def other_member() -> Actor:
    return Actor(id=2, role=UserRole.MEMBER)


@pytest.fixture
def admin() -> Actor:
    return Actor(id=99, role=UserRole.ADMIN)


@pytest.fixture
def table_repo() -> InMemoryTableRepository:
    return InMemoryTableRepository(
        [
            Table(id=1, name="Mesa 1", description=None, created_at=NOW, updated_at=NOW),
            Table(id=2, name="Mesa 2", description="window", created_at=NOW, updated_at=NOW),
        ]
    )


@pytest.fixture
def res_repo() -> InMemoryReservationRepository:
    return InMemoryReservationRepository()


@pytest.fixture
def policy_store() -> InMemoryPolicyStore:
    return InMemoryPolicyStore(
        ReservationPolicy(
            max_hours_per_reservation=4,
            max_reservations_per_user_per_day=0,
            min_hours_in_advance=0,
        )
    )


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def make_scheduler(
    res_repo: InMemoryReservationRepository,
    table_repo: InMemoryTableRepository,
    policy_store: InMemoryPolicyStore,
    publisher: RecordingPublisher,
    notifier: RecordingNotifier,
) -> Callable[..., ReservationScheduler]:
    def factory(**overrides: Any) -> ReservationScheduler:
        kwargs: dict[str, Any] = {
            "locks": ResourceLocks(),
            "publisher": publisher,
            "notifier": notifier,
            "clock": lambda: NOW,
        }
        kwargs.update(overrides)
        repo = kwargs.pop("res_repo", res_repo)
        return ReservationScheduler(repo, table_repo, policy_store, **kwargs)

    return factory


@pytest.fixture
def scheduler(make_scheduler: Callable[..., ReservationScheduler]) -> ReservationScheduler:
    return make_scheduler()


@pytest.fixture
def gate(
    res_repo: InMemoryReservationRepository,
    publisher: RecordingPublisher,
    notifier: RecordingNotifier,
) -> ApprovalGate:
    return ApprovalGate(res_repo, publisher=publisher, notifier=notifier, clock=lambda: NOW)
