"""
Timetable slot repository.

Keeps every SQLAlchemy query for timetable slots in one place and hands
plain ``BookingSlot`` copies back to the scheduling core. All queries are
scoped to one institution.
"""
import logging
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import func, or_, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from db import TimetableSlot
from exceptions import RepositoryError, SlotNotFoundError
from scheduling import BookingSlot, TimeInterval

logger = logging.getLogger(__name__)

# Columns a teacher slot listing may be sorted on
SORTABLE_COLUMNS = {
    "start_time": TimetableSlot.start_time,
    "end_time": TimetableSlot.end_time,
    "day": TimetableSlot.day,
    "subject_name": TimetableSlot.subject_name,
}


def to_booking_slot(row: TimetableSlot) -> BookingSlot:
    return BookingSlot(
        id=row.id,
        resource_id=row.teacher_id,
        subject_id=row.subject_id,
        interval=TimeInterval(row.start_time, row.end_time),
        day_label=row.day,
        resource_name=row.teacher_name,
        subject_name=row.subject_name,
    )


class SlotRepository:
    def __init__(self, session: AsyncSession, institution_id: str):
        self.session = session
        self.institution_id = institution_id

    # ---------- QUERIES ----------
    async def list_bookings_for_resource(
        self, resource_id: str, exclude_id: Optional[str] = None
    ) -> List[BookingSlot]:
        query = select(TimetableSlot).where(
            TimetableSlot.institution_id == self.institution_id,
            TimetableSlot.teacher_id == resource_id,
        )
        if exclude_id:
            query = query.where(TimetableSlot.id != exclude_id)

        try:
            result = await self.session.execute(query.order_by(TimetableSlot.start_time))
        except SQLAlchemyError as e:
            logger.exception("Error listing bookings for teacher %s", resource_id)
            raise RepositoryError(f"Failed to load bookings: {e}") from e
        return [to_booking_slot(row) for row in result.scalars().all()]

    async def list_bookings_between(
        self,
        start: datetime,
        end: datetime,
        teacher_id: Optional[str] = None,
        subject_id: Optional[str] = None,
        subject_ids: Optional[Iterable[str]] = None,
    ) -> List[BookingSlot]:
        """Bookings starting in [start, end), ordered by start time."""
        query = select(TimetableSlot).where(
            TimetableSlot.institution_id == self.institution_id,
            TimetableSlot.start_time >= start,
            TimetableSlot.start_time < end,
        )
        if teacher_id:
            query = query.where(TimetableSlot.teacher_id == teacher_id)
        if subject_id:
            query = query.where(TimetableSlot.subject_id == subject_id)
        if subject_ids is not None:
            query = query.where(TimetableSlot.subject_id.in_(list(subject_ids)))

        try:
            result = await self.session.execute(query.order_by(TimetableSlot.start_time))
        except SQLAlchemyError as e:
            logger.exception("Error listing bookings between %s and %s", start, end)
            raise RepositoryError(f"Failed to load bookings: {e}") from e
        return [to_booking_slot(row) for row in result.scalars().all()]

    async def list_bookings_from(
        self,
        start: datetime,
        teacher_id: Optional[str] = None,
        subject_ids: Optional[Iterable[str]] = None,
        inclusive: bool = True,
        limit: Optional[int] = None,
    ) -> List[BookingSlot]:
        """Bookings starting at or after ``start`` (strictly after unless inclusive)."""
        starts = TimetableSlot.start_time >= start if inclusive else TimetableSlot.start_time > start
        query = select(TimetableSlot).where(TimetableSlot.institution_id == self.institution_id, starts)
        if teacher_id:
            query = query.where(TimetableSlot.teacher_id == teacher_id)
        if subject_ids is not None:
            query = query.where(TimetableSlot.subject_id.in_(list(subject_ids)))
        query = query.order_by(TimetableSlot.start_time)
        if limit is not None:
            query = query.limit(limit)

        try:
            result = await self.session.execute(query)
        except SQLAlchemyError as e:
            logger.exception("Error listing bookings from %s", start)
            raise RepositoryError(f"Failed to load bookings: {e}") from e
        return [to_booking_slot(row) for row in result.scalars().all()]

    async def search_bookings(
        self,
        teacher_id: str,
        search: Optional[str] = None,
        subject_id: Optional[str] = None,
        day: Optional[str] = None,
        sort: str = "start_time",
        descending: bool = False,
        limit: int = 10,
        offset: int = 0,
    ) -> Tuple[List[BookingSlot], int]:
        """One page of a teacher's bookings plus the number of matches overall.

        ``search`` matches the subject name or the day label, case-insensitively.
        """
        query = select(TimetableSlot).where(
            TimetableSlot.institution_id == self.institution_id,
            TimetableSlot.teacher_id == teacher_id,
        )
        if search:
            pattern = f"%{search}%"
            query = query.where(
                or_(TimetableSlot.subject_name.ilike(pattern), TimetableSlot.day.ilike(pattern))
            )
        if subject_id:
            query = query.where(TimetableSlot.subject_id == subject_id)
        if day:
            query = query.where(TimetableSlot.day == day)

        column = SORTABLE_COLUMNS[sort]
        ordering = [column.desc() if descending else column.asc()]
        if sort != "start_time":
            ordering.append(TimetableSlot.start_time)

        try:
            total = await self.session.scalar(select(func.count()).select_from(query.subquery()))
            result = await self.session.execute(query.order_by(*ordering).limit(limit).offset(offset))
        except SQLAlchemyError as e:
            logger.exception("Error searching bookings for teacher %s", teacher_id)
            raise RepositoryError(f"Failed to load bookings: {e}") from e
        return [to_booking_slot(row) for row in result.scalars().all()], total or 0

    async def get_booking(self, slot_id: str) -> Optional[BookingSlot]:
        row = await self._get_row(slot_id)
        return to_booking_slot(row) if row else None

    async def _get_row(self, slot_id: str) -> Optional[TimetableSlot]:
        try:
            result = await self.session.execute(
                select(TimetableSlot).where(
                    TimetableSlot.id == slot_id,
                    TimetableSlot.institution_id == self.institution_id,
                )
            )
        except SQLAlchemyError as e:
            logger.exception("Error loading timetable slot %s", slot_id)
            raise RepositoryError(f"Failed to load timetable slot: {e}") from e
        return result.scalar_one_or_none()

    # ---------- WRITES ----------
    async def insert_booking(self, slot: BookingSlot) -> str:
        row = TimetableSlot(
            institution_id=self.institution_id,
            teacher_id=slot.resource_id,
            teacher_name=slot.resource_name,
            subject_id=slot.subject_id,
            subject_name=slot.subject_name,
            day=slot.day_label,
            start_time=slot.interval.start,
            end_time=slot.interval.end,
        )
        self.session.add(row)
        try:
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.exception("Error inserting timetable slot for teacher %s", slot.resource_id)
            raise RepositoryError(f"Failed to save timetable slot: {e}") from e
        return row.id

    async def replace_booking(self, slot: BookingSlot) -> None:
        row = await self._get_row(slot.id)
        if row is None:
            raise SlotNotFoundError(slot.id)

        row.teacher_id = slot.resource_id
        row.teacher_name = slot.resource_name
        row.subject_id = slot.subject_id
        row.subject_name = slot.subject_name
        row.day = slot.day_label
        row.start_time = slot.interval.start
        row.end_time = slot.interval.end
        try:
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.exception("Error updating timetable slot %s", slot.id)
            raise RepositoryError(f"Failed to update timetable slot: {e}") from e

    async def delete_booking(self, slot_id: str) -> None:
        row = await self._get_row(slot_id)
        if row is None:
            raise SlotNotFoundError(slot_id)
        try:
            await self.session.delete(row)
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.exception("Error deleting timetable slot %s", slot_id)
            raise RepositoryError(f"Failed to delete timetable slot: {e}") from e

    async def lock_resource(self, resource_id: str) -> None:
        """Serialise writers for one teacher until the transaction ends.

        Only PostgreSQL has transaction-scoped advisory locks; elsewhere the
        in-process lock held by the caller is all there is.
        """
        if self.session.get_bind().dialect.name != "postgresql":
            return
        try:
            await self.session.execute(
                text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
                {"key": f"{self.institution_id}:{resource_id}"},
            )
        except SQLAlchemyError as e:
            logger.exception("Error locking teacher %s", resource_id)
            raise RepositoryError(f"Failed to lock teacher bookings: {e}") from e

    # ---------- TRANSACTION ----------
    async def commit(self) -> None:
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            logger.exception("Error committing timetable changes")
            raise RepositoryError(f"Failed to save changes: {e}") from e

    async def rollback(self) -> None:
        await self.session.rollback()
