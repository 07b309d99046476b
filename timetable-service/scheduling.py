"""
Weekly slot scheduling core.

Resolves a (week, day, time-of-day) form submission into an absolute
interval and checks it against a teacher's existing bookings. Nothing in
here touches the database directly; bookings come in through the
repository handed to ``ConflictChecker``.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Dict, Iterable, List, Optional

from exceptions import FormValidationError, InvalidRangeError, UnknownDayError

logger = logging.getLogger(__name__)

DAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")

# Hourly rows of the week grid (08:00 - 17:00 starts)
STANDARD_TIMES = tuple(time(hour) for hour in range(8, 18))

TIME_FORMATS = ("%H:%M", "%H:%M:%S")
DATE_FORMAT = "%Y-%m-%d"
WEEK_LABEL_FORMAT = "%b %d"

REQUIRED_FIELDS = ("teacher_id", "subject_id", "day", "date", "start_time", "end_time")


# ---------- INTERVAL ----------
@dataclass(frozen=True)
class TimeInterval:
    """Half-open [start, end) range of naive local datetimes."""

    start: datetime
    end: datetime

    def __post_init__(self):
        if self.end <= self.start:
            raise InvalidRangeError("The end time must be after the start time.")

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def overlaps(self, other: "TimeInterval") -> bool:
        # Touching boundaries (a.end == b.start) do not overlap
        return self.start < other.end and other.start < self.end

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant < self.end

    def __str__(self):
        return f"{self.start:%H:%M}-{self.end:%H:%M}"


# ---------- BOOKINGS ----------
@dataclass(frozen=True)
class BookingSlot:
    """Transient copy of a stored timetable slot."""

    id: Optional[str]
    resource_id: str
    subject_id: str
    interval: TimeInterval
    day_label: str
    resource_name: Optional[str] = None
    subject_name: Optional[str] = None

    def describe(self) -> str:
        subject = self.subject_name or self.subject_id
        teacher = self.resource_name or self.resource_id
        return f"{subject} with {teacher} on {self.day_label} {self.interval}"


@dataclass(frozen=True)
class ConflictResult:
    conflicting: Optional[BookingSlot] = None

    @property
    def ok(self) -> bool:
        return self.conflicting is None

    @property
    def reason(self) -> str:
        if self.conflicting is None:
            return ""
        return (
            "Teacher already has a class scheduled during this time: "
            f"{self.conflicting.describe()}"
        )


NO_CONFLICT = ConflictResult()


@dataclass(frozen=True)
class SlotRequest:
    """A slot form after every field has been parsed."""

    teacher_id: str
    subject_id: str
    day: str
    week_anchor: date
    start_time: time
    end_time: time


# ---------- PARSING ----------
def canonical_day(value: str) -> str:
    cleaned = (value or "").strip().capitalize()
    if cleaned not in DAYS:
        raise UnknownDayError(value)
    return cleaned


def parse_date(value: str, field: str = "date") -> date:
    try:
        return datetime.strptime(value.strip(), DATE_FORMAT).date()
    except (AttributeError, ValueError):
        raise FormValidationError(field, f"The {field} field must be a date (YYYY-MM-DD).")


def parse_time_of_day(value: str, field: str) -> time:
    for fmt in TIME_FORMATS:
        try:
            return datetime.strptime(value.strip(), fmt).time()
        except (AttributeError, ValueError):
            continue
    raise FormValidationError(field, f"The {field} field must be a time (HH:MM).")


def validate_slot_form(form) -> SlotRequest:
    """Turn raw string form fields into a ``SlotRequest``.

    ``form`` is anything exposing the fields in ``REQUIRED_FIELDS`` as
    attributes. Raises before any lookup or query is made.
    """
    for name in REQUIRED_FIELDS:
        value = getattr(form, name, None)
        if value is None or not str(value).strip():
            raise FormValidationError(name, f"The {name} field is required.")

    day = canonical_day(form.day)
    anchor = parse_date(form.date)
    start = parse_time_of_day(form.start_time, "start_time")
    end = parse_time_of_day(form.end_time, "end_time")
    if end <= start:
        raise InvalidRangeError("The end time must be after the start time.")

    return SlotRequest(
        teacher_id=form.teacher_id.strip(),
        subject_id=form.subject_id.strip(),
        day=day,
        week_anchor=anchor,
        start_time=start,
        end_time=end,
    )


def default_end_time(start: time) -> Optional[time]:
    """Prefill rule of the slot form: the next full hour after ``start``."""
    if start.hour >= 23:
        return None
    return time(start.hour + 1)


# ---------- WEEK RESOLUTION ----------
def start_of_week(value: date) -> date:
    if isinstance(value, datetime):
        value = value.date()
    return value - timedelta(days=value.weekday())


class WeekSlotResolver:
    """Maps symbolic week days onto concrete calendar dates.

    All arithmetic is done on naive values; callers keep the anchor and
    times-of-day in the same local calendar.
    """

    days = DAYS

    def day_index(self, day_name: str) -> int:
        return self.days.index(canonical_day(day_name))

    def day_name_of(self, moment: date) -> str:
        return self.days[moment.weekday()]

    def date_for(self, week_anchor: date, day_name: str) -> date:
        return start_of_week(week_anchor) + timedelta(days=self.day_index(day_name))

    def resolve(
        self,
        week_anchor: date,
        day_name: str,
        start_time_of_day: time,
        end_time_of_day: time,
    ) -> TimeInterval:
        target = self.date_for(week_anchor, day_name)
        return TimeInterval(
            datetime.combine(target, start_time_of_day),
            datetime.combine(target, end_time_of_day),
        )

    def resolve_request(self, request: SlotRequest) -> TimeInterval:
        return self.resolve(request.week_anchor, request.day, request.start_time, request.end_time)

    def week_bounds(self, week_anchor: date) -> TimeInterval:
        monday = datetime.combine(start_of_week(week_anchor), time.min)
        return TimeInterval(monday, monday + timedelta(days=7))

    def previous_week(self, week_anchor: date) -> date:
        return start_of_week(week_anchor) - timedelta(days=7)

    def next_week(self, week_anchor: date) -> date:
        return start_of_week(week_anchor) + timedelta(days=7)

    def week_label(self, week_anchor: date) -> str:
        monday = start_of_week(week_anchor)
        sunday = monday + timedelta(days=6)
        return f"{monday.strftime(WEEK_LABEL_FORMAT)} - {sunday.strftime(WEEK_LABEL_FORMAT)}, {sunday.year}"


# ---------- WEEK GRID ----------
def group_by_day(slots: Iterable[BookingSlot]) -> Dict[str, List[BookingSlot]]:
    grouped: Dict[str, List[BookingSlot]] = {day: [] for day in DAYS}
    for slot in sorted(slots, key=lambda s: s.interval.start):
        grouped[DAYS[slot.interval.start.weekday()]].append(slot)
    return grouped


def slot_starting_at(
    slots: Iterable[BookingSlot], target: date, time_of_day: time
) -> Optional[BookingSlot]:
    start = datetime.combine(target, time_of_day)
    for slot in slots:
        if slot.interval.start == start:
            return slot
    return None


# ---------- CONFLICTS ----------
def find_conflict(candidate: TimeInterval, slots: Iterable[BookingSlot]) -> ConflictResult:
    for slot in sorted(slots, key=lambda s: s.interval.start):
        if candidate.overlaps(slot.interval):
            return ConflictResult(conflicting=slot)
    return NO_CONFLICT


class ConflictChecker:
    """Per-teacher overlap check against the bookings in a repository.

    A teacher only has a handful of bookings, so a linear scan over all of
    them is enough.
    """

    def __init__(self, repository):
        self.repository = repository

    async def check(
        self,
        resource_id: str,
        candidate: TimeInterval,
        exclude_booking_id: Optional[str] = None,
    ) -> ConflictResult:
        slots = await self.repository.list_bookings_for_resource(
            resource_id, exclude_id=exclude_booking_id
        )
        result = find_conflict(candidate, slots)
        if not result.ok:
            logger.warning(
                "Conflict for teacher %s between %s and %s: %s",
                resource_id, candidate.start, candidate.end, result.conflicting.id,
            )
        return result


# ---------- STATS ----------
WEEKEND = ("Saturday", "Sunday")


@dataclass(frozen=True)
class TeacherStats:
    total_slots: int
    subjects_count: int
    weekday_slots: int
    weekend_slots: int
    total_hours: float
    day_counts: Dict[str, int]


def teacher_stats(slots: Iterable[BookingSlot]) -> TeacherStats:
    """Summarise a teacher's bookings; every day of the week gets a count."""
    slots = list(slots)
    day_counts = {day: 0 for day in DAYS}
    for slot in slots:
        day_counts[DAYS[slot.interval.start.weekday()]] += 1

    weekend = sum(day_counts[day] for day in WEEKEND)
    taught = sum((slot.interval.duration for slot in slots), timedelta())
    return TeacherStats(
        total_slots=len(slots),
        subjects_count=len({slot.subject_id for slot in slots}),
        weekday_slots=len(slots) - weekend,
        weekend_slots=weekend,
        total_hours=round(taught.total_seconds() / 3600, 2),
        day_counts=day_counts,
    )
