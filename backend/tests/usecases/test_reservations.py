import asyncio
from typing import Any, Callable, Mapping

import pytest
from conftest import NOW, RecordingNotifier, RecordingPublisher, at
from tablebook.domain.errors import (
    DailyQuotaExceededError,
    ErrorKind,
    ForbiddenError,
    InvalidStateTransitionError,
    MalformedRequestError,
    NotFoundError,
    ReservationError,
    SlotConflictError,
    TransientRepositoryError,
    UnavailableError,
)
from tablebook.domain.events import NotificationKind
from tablebook.domain.policy import Actor, ReservationDraft, ReservationPolicy
from tablebook.domain.repositories import ReservationFilter
from tablebook.infrastructure.locks import ResourceLocks
from tablebook.infrastructure.memory import (
    InMemoryPolicyStore,
    InMemoryReservationRepository,
    InMemoryTableRepository,
)
from tablebook.models import Reservation, ReservationStatus, Table
from tablebook.usecases.reservations import ReservationScheduler


class FlakyReservationRepository(InMemoryReservationRepository):
    """Fails the first ``failures`` writes with a transient error."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.attempts = 0

    def _maybe_fail(self) -> None:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise TransientRepositoryError("deadlock found when trying to get lock")

    async def add(self, reservation: Reservation) -> Reservation:
        self._maybe_fail()
        return await super().add(reservation)

    async def save(self, reservation: Reservation, changes: Mapping[str, Any]) -> Reservation:
        self._maybe_fail()
        return await super().save(reservation, changes)


class LockTimeoutTableRepository(InMemoryTableRepository):
    """Times out the first ``failures`` locking reads."""

    def __init__(self, tables, failures: int) -> None:
        super().__init__(tables)
        self.failures = failures
        self.lock_reads = 0

    async def get_for_update(self, table_id: int) -> Table | None:
        self.lock_reads += 1
        if self.lock_reads <= self.failures:
            raise TransientRepositoryError("Lock wait timeout exceeded; try restarting transaction")
        return await super().get_for_update(table_id)


class BrokenNotifier:
    def notify(self, *args: object) -> None:
        raise ConnectionError("smtp down")


def _draft(start, end, *, table_id: int = 1, **kwargs) -> ReservationDraft:
    return ReservationDraft(table_id=table_id, start_time=start, end_time=end, **kwargs)


@pytest.mark.asyncio
async def test_create_regular_reservation_is_active(
    scheduler: ReservationScheduler,
    member: Actor,
    publisher: RecordingPublisher,
    notifier: RecordingNotifier,
) -> None:
    reservation = await scheduler.create(_draft(at(10), at(12), num_guests=2), actor=member)

    assert reservation.id == 1
    assert reservation.status == ReservationStatus.ACTIVE
    assert reservation.approved is True
    assert reservation.user_id == member.id
    assert reservation.num_guests == 2
    assert reservation.version == 1
    assert reservation.created_at == NOW

    [event] = publisher.events
    assert event.from_status is None
    assert event.to_status == ReservationStatus.ACTIVE
    assert event.initiator == "user"
    assert [(uid, kind) for uid, kind, _ in notifier.sent] == [(member.id, NotificationKind.CREATED)]


@pytest.mark.asyncio
async def test_create_all_day_waits_for_approval(
    scheduler: ReservationScheduler,
    member: Actor,
    notifier: RecordingNotifier,
) -> None:
    reservation = await scheduler.create(_draft(at(15), at(16), all_day=True, reason="club night"), actor=member)

    assert reservation.status == ReservationStatus.PENDING
    assert reservation.approved is False
    assert (reservation.start_time, reservation.end_time) == (at(8), at(22))
    assert reservation.reason == "club night"
    assert notifier.sent[0][1] == NotificationKind.AWAITING_APPROVAL


@pytest.mark.asyncio
async def test_create_all_day_without_approval_requirement(
    scheduler: ReservationScheduler,
    member: Actor,
    policy_store: InMemoryPolicyStore,
) -> None:
    policy_store.set_policy(ReservationPolicy(requires_approval_for_all_day=False))
    reservation = await scheduler.create(_draft(at(15), at(16), all_day=True, reason="league"), actor=member)
    assert reservation.status == ReservationStatus.ACTIVE


@pytest.mark.asyncio
async def test_create_on_unknown_table(scheduler: ReservationScheduler, member: Actor) -> None:
    with pytest.raises(NotFoundError):
        await scheduler.create(_draft(at(10), at(11), table_id=42), actor=member)


@pytest.mark.asyncio
async def test_rejected_create_stores_and_publishes_nothing(
    scheduler: ReservationScheduler,
    member: Actor,
    res_repo: InMemoryReservationRepository,
    publisher: RecordingPublisher,
) -> None:
    with pytest.raises(MalformedRequestError):
        await scheduler.create(_draft(at(12), at(10)), actor=member)
    assert await res_repo.list(ReservationFilter()) == []
    assert publisher.events == []


@pytest.mark.asyncio
async def test_daily_quota_spans_tables(
    scheduler: ReservationScheduler,
    member: Actor,
    policy_store: InMemoryPolicyStore,
) -> None:
    policy_store.set_policy(
        ReservationPolicy(max_hours_per_reservation=4, max_reservations_per_user_per_day=1, min_hours_in_advance=0)
    )
    await scheduler.create(_draft(at(10), at(12), table_id=1), actor=member)

    with pytest.raises(DailyQuotaExceededError) as excinfo:
        await scheduler.create(_draft(at(14), at(15), table_id=2), actor=member)
    assert excinfo.value.detail == {"limit": 1, "current_count": 1}

    # The next day is a fresh quota.
    await scheduler.create(_draft(at(14, day=20), at(15, day=20), table_id=2), actor=member)


@pytest.mark.asyncio
async def test_policy_changes_apply_to_the_next_request(
    scheduler: ReservationScheduler,
    member: Actor,
    policy_store: InMemoryPolicyStore,
) -> None:
    await scheduler.create(_draft(at(8), at(12)), actor=member)
    await policy_store.update_policy({"max_hours_per_reservation": 2})
    with pytest.raises(ReservationError) as excinfo:
        await scheduler.create(_draft(at(13), at(16)), actor=member)
    assert excinfo.value.kind == ErrorKind.DURATION_EXCEEDED


@pytest.mark.asyncio
async def test_concurrent_overlapping_creates_admit_exactly_one(
    scheduler: ReservationScheduler,
    member: Actor,
    other_member: Actor,
    res_repo: InMemoryReservationRepository,
) -> None:
    results = await asyncio.gather(
        scheduler.create(_draft(at(10), at(12)), actor=member),
        scheduler.create(_draft(at(11), at(13)), actor=other_member),
        scheduler.create(_draft(at(11, 30), at(12, 30)), actor=other_member),
        return_exceptions=True,
    )

    created = [r for r in results if isinstance(r, Reservation)]
    conflicts = [r for r in results if isinstance(r, SlotConflictError)]
    assert len(created) == 1
    assert len(conflicts) == 2
    assert all(c.detail["conflicting_reservation_id"] == created[0].id for c in conflicts)
    assert len(await res_repo.list(ReservationFilter(table_id=1))) == 1


@pytest.mark.asyncio
async def test_concurrent_creates_on_different_tables_both_succeed(
    scheduler: ReservationScheduler,
    member: Actor,
    other_member: Actor,
) -> None:
    first, second = await asyncio.gather(
        scheduler.create(_draft(at(10), at(12), table_id=1), actor=member),
        scheduler.create(_draft(at(10), at(12), table_id=2), actor=other_member),
    )
    assert {first.table_id, second.table_id} == {1, 2}


@pytest.mark.asyncio
async def test_touching_reservations_by_different_users(
    scheduler: ReservationScheduler,
    member: Actor,
    other_member: Actor,
    policy_store: InMemoryPolicyStore,
) -> None:
    policy_store.set_policy(
        ReservationPolicy(max_reservations_per_user_per_day=0, allow_consecutive_reservations=False)
    )
    await scheduler.create(_draft(at(10), at(12)), actor=member)
    await scheduler.create(_draft(at(12), at(13)), actor=other_member)
    with pytest.raises(SlotConflictError):
        await scheduler.create(_draft(at(11), at(13)), actor=other_member)


@pytest.mark.asyncio
async def test_write_is_retried_on_transient_failure(
    make_scheduler: Callable[..., ReservationScheduler],
    member: Actor,
) -> None:
    repo = FlakyReservationRepository(failures=2)
    scheduler = make_scheduler(res_repo=repo, max_write_attempts=3)

    reservation = await scheduler.create(_draft(at(10), at(11)), actor=member)

    assert repo.attempts == 3
    assert await repo.get(reservation.id) is reservation


@pytest.mark.asyncio
async def test_write_gives_up_as_unavailable(
    make_scheduler: Callable[..., ReservationScheduler],
    member: Actor,
    publisher: RecordingPublisher,
) -> None:
    repo = FlakyReservationRepository(failures=5)
    scheduler = make_scheduler(res_repo=repo, max_write_attempts=3)

    with pytest.raises(UnavailableError):
        await scheduler.create(_draft(at(10), at(11)), actor=member)
    assert repo.attempts == 3
    assert await repo.list(ReservationFilter()) == []
    assert publisher.events == []


@pytest.mark.asyncio
async def test_notification_failure_does_not_fail_the_operation(
    make_scheduler: Callable[..., ReservationScheduler],
    member: Actor,
    publisher: RecordingPublisher,
) -> None:
    scheduler = make_scheduler(notifier=BrokenNotifier())
    reservation = await scheduler.create(_draft(at(10), at(11)), actor=member)
    assert reservation.status == ReservationStatus.ACTIVE
    assert len(publisher.events) == 1


@pytest.mark.asyncio
async def test_list_and_get_are_scoped_to_owner(
    scheduler: ReservationScheduler,
    member: Actor,
    other_member: Actor,
    admin: Actor,
) -> None:
    mine = await scheduler.create(_draft(at(10), at(11)), actor=member)
    theirs = await scheduler.create(_draft(at(10), at(11), table_id=2), actor=other_member)

    listed = await scheduler.list_reservations(ReservationFilter(user_id=other_member.id), actor=member)
    assert [r.id for r in listed] == [mine.id]
    assert len(await scheduler.list_reservations(ReservationFilter(), actor=admin)) == 2

    with pytest.raises(ForbiddenError):
        await scheduler.get_reservation(theirs.id, actor=member)
    assert await scheduler.get_reservation(theirs.id, actor=admin) is theirs
    with pytest.raises(NotFoundError):
        await scheduler.get_reservation(999, actor=admin)


@pytest.mark.asyncio
async def test_update_moves_reservation_and_bumps_version(
    scheduler: ReservationScheduler,
    member: Actor,
    publisher: RecordingPublisher,
    notifier: RecordingNotifier,
) -> None:
    reservation = await scheduler.create(_draft(at(10), at(12)), actor=member)

    # Overlaps its own previous range; the record being edited is not a conflict.
    updated = await scheduler.update(reservation.id, _draft(at(11), at(13)), actor=member)

    assert (updated.start_time, updated.end_time) == (at(11), at(13))
    assert updated.status == ReservationStatus.ACTIVE
    assert updated.version == 2
    assert len(publisher.events) == 1
    assert notifier.sent[-1][1] == NotificationKind.UPDATED


@pytest.mark.asyncio
async def test_update_to_another_table_checks_that_table(
    scheduler: ReservationScheduler,
    member: Actor,
    other_member: Actor,
) -> None:
    await scheduler.create(_draft(at(10), at(12), table_id=2), actor=other_member)
    reservation = await scheduler.create(_draft(at(10), at(12), table_id=1), actor=member)

    with pytest.raises(SlotConflictError):
        await scheduler.update(reservation.id, _draft(at(11), at(12), table_id=2), actor=member)
    moved = await scheduler.update(reservation.id, _draft(at(12), at(13), table_id=2), actor=member)
    assert moved.table_id == 2


@pytest.mark.asyncio
async def test_update_quota_counts_for_the_owner_when_admin_edits(
    scheduler: ReservationScheduler,
    member: Actor,
    admin: Actor,
    policy_store: InMemoryPolicyStore,
) -> None:
    policy_store.set_policy(ReservationPolicy(max_reservations_per_user_per_day=1))
    await scheduler.create(_draft(at(10, day=20), at(11, day=20)), actor=member)
    reservation = await scheduler.create(_draft(at(10), at(11)), actor=member)

    with pytest.raises(DailyQuotaExceededError):
        await scheduler.update(reservation.id, _draft(at(14, day=20), at(15, day=20)), actor=admin)

    updated = await scheduler.update(reservation.id, _draft(at(14), at(15)), actor=admin)
    assert updated.user_id == member.id


@pytest.mark.asyncio
async def test_update_to_all_day_requires_new_approval(
    scheduler: ReservationScheduler,
    member: Actor,
    publisher: RecordingPublisher,
    notifier: RecordingNotifier,
) -> None:
    reservation = await scheduler.create(_draft(at(10), at(12)), actor=member)
    updated = await scheduler.update(reservation.id, _draft(at(10), at(12), all_day=True, reason="cup"), actor=member)

    assert updated.status == ReservationStatus.PENDING
    assert updated.approved is False
    assert (publisher.events[-1].from_status, publisher.events[-1].to_status) == (
        ReservationStatus.ACTIVE,
        ReservationStatus.PENDING,
    )
    assert notifier.sent[-1][1] == NotificationKind.AWAITING_APPROVAL


@pytest.mark.asyncio
async def test_update_of_approved_all_day_on_same_day_keeps_approval(
    scheduler: ReservationScheduler,
    member: Actor,
    policy_store: InMemoryPolicyStore,
) -> None:
    reservation = await scheduler.create(_draft(at(10), at(12), all_day=True, reason="cup"), actor=member)
    reservation.status = ReservationStatus.ACTIVE
    reservation.approved = True

    updated = await scheduler.update(
        reservation.id,
        _draft(at(10), at(12), all_day=True, reason="cup final", num_guests=3),
        actor=member,
    )
    assert updated.status == ReservationStatus.ACTIVE
    assert updated.reason == "cup final"

    moved = await scheduler.update(
        reservation.id,
        _draft(at(10, day=21), at(12, day=21), all_day=True, reason="cup final"),
        actor=member,
    )
    assert moved.status == ReservationStatus.PENDING


@pytest.mark.asyncio
async def test_update_permissions_and_state(
    scheduler: ReservationScheduler,
    member: Actor,
    other_member: Actor,
) -> None:
    reservation = await scheduler.create(_draft(at(10), at(12)), actor=member)

    with pytest.raises(ForbiddenError):
        await scheduler.update(reservation.id, _draft(at(13), at(14)), actor=other_member)
    with pytest.raises(NotFoundError):
        await scheduler.update(999, _draft(at(13), at(14)), actor=member)

    await scheduler.cancel(reservation.id, actor=member)
    with pytest.raises(InvalidStateTransitionError):
        await scheduler.update(reservation.id, _draft(at(13), at(14)), actor=member)


@pytest.mark.asyncio
async def test_cancel_frees_the_slot(
    scheduler: ReservationScheduler,
    member: Actor,
    other_member: Actor,
    publisher: RecordingPublisher,
    notifier: RecordingNotifier,
) -> None:
    reservation = await scheduler.create(_draft(at(10), at(12)), actor=member)
    cancelled = await scheduler.cancel(reservation.id, actor=member)

    assert cancelled.status == ReservationStatus.CANCELLED
    assert cancelled.version == 2
    assert (publisher.events[-1].from_status, publisher.events[-1].to_status) == (
        ReservationStatus.ACTIVE,
        ReservationStatus.CANCELLED,
    )
    assert notifier.sent[-1][1] == NotificationKind.CANCELLED

    replacement = await scheduler.create(_draft(at(10), at(12)), actor=other_member)
    assert replacement.status == ReservationStatus.ACTIVE


@pytest.mark.asyncio
async def test_cancel_is_idempotent(
    scheduler: ReservationScheduler,
    member: Actor,
    publisher: RecordingPublisher,
) -> None:
    reservation = await scheduler.create(_draft(at(10), at(12)), actor=member)
    await scheduler.cancel(reservation.id, actor=member)
    again = await scheduler.cancel(reservation.id, actor=member)

    assert again.status == ReservationStatus.CANCELLED
    assert again.version == 2
    assert len(publisher.events) == 2


@pytest.mark.asyncio
async def test_cancel_rules(
    scheduler: ReservationScheduler,
    member: Actor,
    other_member: Actor,
    admin: Actor,
    publisher: RecordingPublisher,
) -> None:
    reservation = await scheduler.create(_draft(at(10), at(12)), actor=member)
    with pytest.raises(ForbiddenError):
        await scheduler.cancel(reservation.id, actor=other_member)
    with pytest.raises(NotFoundError):
        await scheduler.cancel(999, actor=member)

    await scheduler.cancel(reservation.id, actor=admin)
    assert publisher.events[-1].initiator == "admin"

    finished = await scheduler.create(_draft(at(13), at(14)), actor=member)
    finished.status = ReservationStatus.COMPLETED
    with pytest.raises(InvalidStateTransitionError) as excinfo:
        await scheduler.cancel(finished.id, actor=member)
    assert excinfo.value.detail == {"from_status": "completed", "to_status": "cancelled"}


@pytest.mark.asyncio
async def test_delete_requires_admin_and_closed_reservation(
    scheduler: ReservationScheduler,
    member: Actor,
    admin: Actor,
    res_repo: InMemoryReservationRepository,
) -> None:
    reservation = await scheduler.create(_draft(at(10), at(12)), actor=member)

    with pytest.raises(ForbiddenError):
        await scheduler.delete(reservation.id, actor=member)
    with pytest.raises(InvalidStateTransitionError):
        await scheduler.delete(reservation.id, actor=admin)
    with pytest.raises(NotFoundError):
        await scheduler.delete(999, actor=admin)

    await scheduler.cancel(reservation.id, actor=member)
    await scheduler.delete(reservation.id, actor=admin)
    assert await res_repo.get(reservation.id) is None


@pytest.mark.asyncio
async def test_lock_wait_on_table_read_is_retried(
    res_repo: InMemoryReservationRepository,
    table_repo: InMemoryTableRepository,
    policy_store: InMemoryPolicyStore,
    publisher: RecordingPublisher,
    notifier: RecordingNotifier,
    member: Actor,
) -> None:
    tables = LockTimeoutTableRepository(await table_repo.list_all(), failures=2)
    scheduler = ReservationScheduler(
        res_repo,
        tables,
        policy_store,
        locks=ResourceLocks(),
        publisher=publisher,
        notifier=notifier,
        max_write_attempts=3,
        clock=lambda: NOW,
    )

    reservation = await scheduler.create(_draft(at(10), at(11)), actor=member)

    assert tables.lock_reads == 3
    assert reservation.status == ReservationStatus.ACTIVE


@pytest.mark.asyncio
async def test_lock_wait_on_table_read_gives_up_as_unavailable(
    res_repo: InMemoryReservationRepository,
    table_repo: InMemoryTableRepository,
    policy_store: InMemoryPolicyStore,
    publisher: RecordingPublisher,
    notifier: RecordingNotifier,
    member: Actor,
) -> None:
    tables = LockTimeoutTableRepository(await table_repo.list_all(), failures=10)
    scheduler = ReservationScheduler(
        res_repo,
        tables,
        policy_store,
        locks=ResourceLocks(),
        publisher=publisher,
        notifier=notifier,
        max_write_attempts=2,
        clock=lambda: NOW,
    )

    with pytest.raises(UnavailableError):
        await scheduler.create(_draft(at(10), at(11)), actor=member)
    assert tables.lock_reads == 2
    assert await res_repo.list(ReservationFilter()) == []
