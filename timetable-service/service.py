"""
Timetable scheduling orchestration.

Every create or edit request moves through the same states:

    validated -> resolved -> checked -> committed | rejected

The conflict check and the write happen in one transaction while a
per-teacher lock is held, so two overlapping requests for the same teacher
cannot both pass the check. Any failure rolls the transaction back.
"""
import asyncio
import dataclasses
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Dict, List, Optional

from exceptions import ConflictError, FormValidationError, SlotNotFoundError
from scheduling import (
    BookingSlot,
    ConflictChecker,
    ConflictResult,
    SlotRequest,
    TeacherStats,
    WeekSlotResolver,
    canonical_day,
    group_by_day,
    start_of_week,
    teacher_stats,
    validate_slot_form,
)

logger = logging.getLogger(__name__)

SORT_FIELDS = ("start_time", "end_time", "day", "subject_name")
SORT_DIRECTIONS = ("asc", "desc")
MAX_PER_PAGE = 100
UPCOMING_LIMIT = 5


class SchedulingState(str, Enum):
    VALIDATED = "validated"
    RESOLVED = "resolved"
    CHECKED = "checked"
    COMMITTED = "committed"
    REJECTED = "rejected"


class ResourceLocks:
    """One asyncio lock per (institution, teacher).

    A lock is dropped as soon as nobody holds or waits on it, so the map
    only ever contains teachers with a write in flight.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = defaultdict(int)

    def __len__(self):
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, institution_id: str, resource_id: str):
        key = f"{institution_id}:{resource_id}"
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]


RESOURCE_LOCKS = ResourceLocks()


@dataclass(frozen=True)
class WeekView:
    week_start: date
    label: str
    previous_week: date
    next_week: date
    days: Dict[str, List[BookingSlot]]
    slots: List[BookingSlot]


@dataclass(frozen=True)
class SlotPage:
    slots: List[BookingSlot]
    total: int
    page: int
    per_page: int

    @property
    def pages(self) -> int:
        return (self.total + self.per_page - 1) // self.per_page


class SchedulingService:
    def __init__(self, repository, directory=None, locks: Optional[ResourceLocks] = None,
                 resolver: Optional[WeekSlotResolver] = None):
        self.repository = repository
        self.directory = directory
        self.locks = locks or RESOURCE_LOCKS
        self.resolver = resolver or WeekSlotResolver()
        self.checker = ConflictChecker(repository)

    def _trace(self, state: SchedulingState, request: SlotRequest, detail=""):
        logger.debug(
            "Slot request for teacher %s on %s %s-%s: %s %s",
            request.teacher_id, request.day, request.start_time, request.end_time,
            state.value, detail,
        )

    async def _names(self, request: SlotRequest, token: Optional[str]):
        if self.directory is None:
            return None, None
        return await self.directory.resolve_names(request.teacher_id, request.subject_id, token)

    # ---------- READ ----------
    async def get_slot(self, slot_id: str) -> BookingSlot:
        slot = await self.repository.get_booking(slot_id)
        if slot is None:
            raise SlotNotFoundError(slot_id)
        return slot

    async def week(self, week_anchor: date, teacher_id: Optional[str] = None,
                   subject_id: Optional[str] = None) -> WeekView:
        bounds = self.resolver.week_bounds(week_anchor)
        slots = await self.repository.list_bookings_between(
            bounds.start, bounds.end, teacher_id=teacher_id, subject_id=subject_id
        )
        return WeekView(
            week_start=start_of_week(week_anchor),
            label=self.resolver.week_label(week_anchor),
            previous_week=self.resolver.previous_week(week_anchor),
            next_week=self.resolver.next_week(week_anchor),
            days=group_by_day(slots),
            slots=slots,
        )

    async def check_availability(self, form, exclude_booking_id: Optional[str] = None) -> ConflictResult:
        """Run validation, resolution and the conflict check without writing."""
        request = validate_slot_form(form)
        self._trace(SchedulingState.VALIDATED, request)
        candidate = self.resolver.resolve_request(request)
        self._trace(SchedulingState.RESOLVED, request, candidate)
        result = await self.checker.check(request.teacher_id, candidate, exclude_booking_id)
        self._trace(SchedulingState.CHECKED, request, result.reason)
        return result

    # ---------- TEACHER OVERVIEW ----------
    async def teacher_stats(self, teacher_id: str) -> TeacherStats:
        return teacher_stats(await self.repository.list_bookings_for_resource(teacher_id))

    async def teacher_slots(
        self,
        teacher_id: str,
        search: Optional[str] = None,
        subject_id: Optional[str] = None,
        day: Optional[str] = None,
        sort: str = "start_time",
        direction: str = "asc",
        page: int = 1,
        per_page: int = 10,
    ) -> SlotPage:
        if sort not in SORT_FIELDS:
            raise FormValidationError("sort", f"The sort field must be one of: {', '.join(SORT_FIELDS)}.")
        if direction not in SORT_DIRECTIONS:
            raise FormValidationError("direction", "The direction field must be asc or desc.")
        if page < 1:
            raise FormValidationError("page", "The page field must be at least 1.")
        if not 1 <= per_page <= MAX_PER_PAGE:
            raise FormValidationError("per_page", f"The per_page field must be between 1 and {MAX_PER_PAGE}.")

        slots, total = await self.repository.search_bookings(
            teacher_id,
            search=search.strip() if search else None,
            subject_id=subject_id,
            day=canonical_day(day) if day else None,
            sort=sort,
            descending=direction == "desc",
            limit=per_page,
            offset=(page - 1) * per_page,
        )
        return SlotPage(slots=slots, total=total, page=page, per_page=per_page)

    async def upcoming_for_teacher(self, teacher_id: str, now: Optional[datetime] = None,
                                   limit: int = UPCOMING_LIMIT) -> List[BookingSlot]:
        """Next classes of a teacher, counting one that starts right now."""
        return await self.repository.list_bookings_from(
            now or datetime.now(), teacher_id=teacher_id, limit=limit
        )

    # ---------- STUDENT VIEW ----------
    async def classes_on(self, day: date, subject_ids: Optional[List[str]] = None) -> List[BookingSlot]:
        start = datetime.combine(day, time.min)
        return await self.repository.list_bookings_between(
            start, start + timedelta(days=1), subject_ids=subject_ids
        )

    async def next_class(self, subject_ids: Optional[List[str]] = None,
                         now: Optional[datetime] = None) -> Optional[BookingSlot]:
        slots = await self.repository.list_bookings_from(
            now or datetime.now(), subject_ids=subject_ids, inclusive=False, limit=1
        )
        return slots[0] if slots else None

    # ---------- WRITE ----------
    async def create_slot(self, form, token: Optional[str] = None) -> BookingSlot:
        request = validate_slot_form(form)
        self._trace(SchedulingState.VALIDATED, request)
        teacher_name, subject_name = await self._names(request, token)
        return await self._commit(request, teacher_name, subject_name)

    async def update_slot(self, slot_id: str, form, token: Optional[str] = None) -> BookingSlot:
        request = validate_slot_form(form)
        self._trace(SchedulingState.VALIDATED, request)
        await self.get_slot(slot_id)
        teacher_name, subject_name = await self._names(request, token)
        return await self._commit(request, teacher_name, subject_name, slot_id=slot_id)

    async def delete_slot(self, slot_id: str) -> None:
        try:
            await self.repository.delete_booking(slot_id)
            await self.repository.commit()
        except Exception:
            await self.repository.rollback()
            raise
        logger.info("Deleted timetable slot %s", slot_id)

    async def _commit(self, request: SlotRequest, teacher_name, subject_name,
                      slot_id: Optional[str] = None) -> BookingSlot:
        candidate = self.resolver.resolve_request(request)
        self._trace(SchedulingState.RESOLVED, request, candidate)
        slot = BookingSlot(
            id=slot_id,
            resource_id=request.teacher_id,
            subject_id=request.subject_id,
            interval=candidate,
            day_label=request.day,
            resource_name=teacher_name,
            subject_name=subject_name,
        )

        async with self.locks.hold(self.repository.institution_id, request.teacher_id):
            try:
                await self.repository.lock_resource(request.teacher_id)
                # Edits are checked against every other booking of the teacher
                result = await self.checker.check(request.teacher_id, candidate, slot_id)
                self._trace(SchedulingState.CHECKED, request, result.reason)
                if not result.ok:
                    self._trace(SchedulingState.REJECTED, request)
                    raise ConflictError(result.conflicting, result.reason)

                if slot_id is None:
                    slot = dataclasses.replace(slot, id=await self.repository.insert_booking(slot))
                else:
                    await self.repository.replace_booking(slot)
                await self.repository.commit()
            except Exception:
                await self.repository.rollback()
                raise

        self._trace(SchedulingState.COMMITTED, request, slot.id)
        logger.info("Saved timetable slot %s: %s", slot.id, slot.describe())
        return slot
