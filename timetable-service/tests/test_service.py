"""Tests for the scheduling orchestration."""

import asyncio
from datetime import date, datetime

import pytest

from conftest import INSTITUTION_ID, WEEK_MONDAY, slot_form
from exceptions import (
    ConflictError,
    FormValidationError,
    InvalidRangeError,
    RepositoryError,
    SlotNotFoundError,
    UnknownDayError,
    UnknownReferenceError,
)
from repository import SlotRepository
from service import ResourceLocks, SchedulingService


@pytest.fixture
def service(repository, directory) -> SchedulingService:
    return SchedulingService(repository, directory, locks=ResourceLocks())


@pytest.mark.asyncio
async def test_create_commits_with_directory_names(service: SchedulingService, directory) -> None:
    slot = await service.create_slot(slot_form(date="2025-05-07"), token="tok")

    assert slot.id
    assert slot.interval.start == datetime(2025, 5, 5, 9, 0)
    assert slot.resource_name == "Teacher A"
    assert slot.subject_name == "Mathematics"
    assert directory.calls == [("teacher-a", "math", "tok")]
    assert (await service.get_slot(slot.id)) == slot


@pytest.mark.asyncio
async def test_identical_create_conflicts_with_itself(service: SchedulingService) -> None:
    first = await service.create_slot(slot_form())

    with pytest.raises(ConflictError) as exc_info:
        await service.create_slot(slot_form())
    assert exc_info.value.slot.id == first.id
    assert "Teacher already has a class scheduled" in exc_info.value.message


@pytest.mark.asyncio
async def test_teacher_a_scenario(service: SchedulingService) -> None:
    await service.create_slot(slot_form())

    with pytest.raises(ConflictError):
        await service.create_slot(slot_form(start_time="09:30", end_time="10:30"))
    await service.create_slot(slot_form(start_time="10:00", end_time="11:00"))
    await service.create_slot(slot_form(teacher_id="teacher-b"))

    week = await service.week(WEEK_MONDAY)
    assert len(week.slots) == 3


@pytest.mark.asyncio
async def test_invalid_range_runs_no_lookup(service: SchedulingService, directory) -> None:
    with pytest.raises(InvalidRangeError):
        await service.create_slot(slot_form(start_time="11:00", end_time="10:00"))
    assert directory.calls == []


@pytest.mark.asyncio
async def test_unknown_subject(service: SchedulingService) -> None:
    with pytest.raises(UnknownReferenceError, match="Invalid Subject ID: history"):
        await service.create_slot(slot_form(subject_id="history"))


@pytest.mark.asyncio
async def test_edit_rechecks_against_other_bookings(service: SchedulingService) -> None:
    slot = await service.create_slot(slot_form())
    other = await service.create_slot(slot_form(start_time="11:00", end_time="12:00"))

    # Same interval as itself is fine
    unchanged = await service.update_slot(slot.id, slot_form(subject_id="art"))
    assert unchanged.id == slot.id
    assert unchanged.subject_name == "Art"

    with pytest.raises(ConflictError) as exc_info:
        await service.update_slot(slot.id, slot_form(start_time="10:30", end_time="11:30"))
    assert exc_info.value.slot.id == other.id

    stored = await service.get_slot(slot.id)
    assert stored.interval.start == datetime(2025, 5, 5, 9, 0)


@pytest.mark.asyncio
async def test_edit_missing_slot(service: SchedulingService) -> None:
    with pytest.raises(SlotNotFoundError):
        await service.update_slot("missing", slot_form())


@pytest.mark.asyncio
async def test_delete(service: SchedulingService) -> None:
    slot = await service.create_slot(slot_form())
    await service.delete_slot(slot.id)

    with pytest.raises(SlotNotFoundError):
        await service.get_slot(slot.id)
    with pytest.raises(SlotNotFoundError):
        await service.delete_slot(slot.id)


@pytest.mark.asyncio
async def test_check_availability_writes_nothing(service: SchedulingService) -> None:
    slot = await service.create_slot(slot_form())

    busy = await service.check_availability(slot_form(start_time="09:30", end_time="10:30"))
    assert not busy.ok
    assert busy.conflicting.id == slot.id

    own = await service.check_availability(slot_form(), exclude_booking_id=slot.id)
    assert own.ok
    assert len((await service.week(WEEK_MONDAY)).slots) == 1


@pytest.mark.asyncio
async def test_failed_commit_leaves_no_row(session_factory, directory, monkeypatch) -> None:
    async with session_factory() as session:
        repository = SlotRepository(session, INSTITUTION_ID)

        async def broken_commit():
            raise RepositoryError("Failed to save changes: disk I/O error")

        monkeypatch.setattr(repository, "commit", broken_commit)
        with pytest.raises(RepositoryError):
            await SchedulingService(repository, directory, locks=ResourceLocks()).create_slot(slot_form())

    async with session_factory() as session:
        assert await SlotRepository(session, INSTITUTION_ID).list_bookings_for_resource("teacher-a") == []


@pytest.mark.asyncio
async def test_concurrent_overlapping_creates(session_factory, directory) -> None:
    locks = ResourceLocks()

    async def create(start_time, end_time):
        async with session_factory() as session:
            service = SchedulingService(SlotRepository(session, INSTITUTION_ID), directory, locks=locks)
            return await service.create_slot(slot_form(start_time=start_time, end_time=end_time))

    results = await asyncio.gather(create("09:00", "10:00"), create("09:30", "10:30"), return_exceptions=True)

    assert sum(isinstance(r, ConflictError) for r in results) == 1
    assert len(locks) == 0
    async with session_factory() as session:
        assert len(await SlotRepository(session, INSTITUTION_ID).list_bookings_for_resource("teacher-a")) == 1


@pytest.mark.asyncio
async def test_week_view(service: SchedulingService) -> None:
    await service.create_slot(slot_form(day="Wednesday", start_time="08:00", end_time="09:00"))
    await service.create_slot(slot_form(day="Wednesday", subject_id="art", teacher_id="teacher-b"))

    view = await service.week(datetime(2025, 5, 8, 12, 0))
    assert view.week_start == WEEK_MONDAY
    assert view.label == "May 05 - May 11, 2025"
    assert [s.interval.start.hour for s in view.days["Wednesday"]] == [8, 9]
    assert view.days["Monday"] == []

    teacher_b = await service.week(WEEK_MONDAY, teacher_id="teacher-b")
    assert [s.resource_id for s in teacher_b.slots] == ["teacher-b"]


@pytest.mark.asyncio
async def test_locks_are_dropped_once_released() -> None:
    locks = ResourceLocks()

    async def hold_briefly():
        async with locks.hold(INSTITUTION_ID, "teacher-a"):
            pass

    async with locks.hold(INSTITUTION_ID, "teacher-a"):
        waiter = asyncio.create_task(hold_briefly())
        await asyncio.sleep(0)
        assert len(locks) == 1
    await waiter
    assert len(locks) == 0

    for index in range(50):
        async with locks.hold(INSTITUTION_ID, f"teacher-{index}"):
            pass
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_teacher_stats(service: SchedulingService) -> None:
    await service.create_slot(slot_form())
    await service.create_slot(slot_form(day="Saturday", subject_id="art", start_time="10:00", end_time="12:00"))
    await service.create_slot(slot_form(teacher_id="teacher-b"))

    stats = await service.teacher_stats("teacher-a")
    assert stats.total_slots == 2
    assert stats.subjects_count == 2
    assert stats.weekday_slots == 1
    assert stats.weekend_slots == 1
    assert stats.total_hours == 3.0


@pytest.mark.asyncio
async def test_teacher_slots_pages(service: SchedulingService) -> None:
    for day in ("Monday", "Wednesday", "Friday"):
        await service.create_slot(slot_form(day=day))

    page = await service.teacher_slots("teacher-a", page=2, per_page=2)
    assert page.total == 3
    assert page.pages == 2
    assert [s.day_label for s in page.slots] == ["Friday"]

    fridays = await service.teacher_slots("teacher-a", day=" friday ")
    assert [s.day_label for s in fridays.slots] == ["Friday"]
    newest = await service.teacher_slots("teacher-a", direction="desc")
    assert [s.day_label for s in newest.slots] == ["Friday", "Wednesday", "Monday"]

    empty = await service.teacher_slots("teacher-b")
    assert (empty.total, empty.pages, empty.slots) == (0, 0, [])


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("kwargs", "field"),
    [
        ({"sort": "teacher_id"}, "sort"),
        ({"direction": "up"}, "direction"),
        ({"page": 0}, "page"),
        ({"per_page": 0}, "per_page"),
        ({"per_page": 101}, "per_page"),
    ],
    ids=["unknown_sort", "unknown_direction", "page_zero", "per_page_zero", "per_page_too_big"],
)
async def test_teacher_slots_rejects_bad_paging(service: SchedulingService, kwargs: dict, field: str) -> None:
    with pytest.raises(FormValidationError) as exc_info:
        await service.teacher_slots("teacher-a", **kwargs)
    assert exc_info.value.field == field


@pytest.mark.asyncio
async def test_teacher_slots_unknown_day(service: SchedulingService) -> None:
    with pytest.raises(UnknownDayError):
        await service.teacher_slots("teacher-a", day="Someday")


@pytest.mark.asyncio
async def test_upcoming_for_teacher(service: SchedulingService) -> None:
    await service.create_slot(slot_form(start_time="08:00", end_time="09:00"))
    await service.create_slot(slot_form(start_time="10:00", end_time="11:00"))
    for day in ("Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"):
        await service.create_slot(slot_form(day=day))
    await service.create_slot(slot_form(teacher_id="teacher-b", start_time="12:00", end_time="13:00"))

    upcoming = await service.upcoming_for_teacher("teacher-a", now=datetime(2025, 5, 5, 10, 0))
    assert [s.interval.start for s in upcoming] == [
        datetime(2025, 5, 5, 10, 0),
        datetime(2025, 5, 6, 9, 0),
        datetime(2025, 5, 7, 9, 0),
        datetime(2025, 5, 8, 9, 0),
        datetime(2025, 5, 9, 9, 0),
    ]
    assert await service.upcoming_for_teacher("teacher-a", now=datetime(2025, 5, 12)) == []


@pytest.mark.asyncio
async def test_classes_today_and_next_class(service: SchedulingService) -> None:
    nine = await service.create_slot(slot_form())
    eleven = await service.create_slot(
        slot_form(teacher_id="teacher-b", subject_id="art", start_time="11:00", end_time="12:00")
    )
    tuesday = await service.create_slot(slot_form(day="Tuesday"))

    assert [s.id for s in await service.classes_on(date(2025, 5, 5))] == [nine.id, eleven.id]
    assert [s.id for s in await service.classes_on(date(2025, 5, 5), subject_ids=["art"])] == [eleven.id]
    assert await service.classes_on(date(2025, 5, 7)) == []

    # A class starting right now is no longer "next"
    now = datetime(2025, 5, 5, 9, 0)
    assert (await service.next_class(now=now)).id == eleven.id
    assert (await service.next_class(subject_ids=["math"], now=now)).id == tuesday.id
    assert await service.next_class(now=datetime(2025, 5, 6, 9, 0)) is None
