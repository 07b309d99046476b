from fastapi import FastAPI, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from jose import jwt, JWTError
from datetime import date, datetime, timedelta
from typing import List, Optional
import logging
import os

from db import SessionLocal, init_db
from directory import Directory
from exceptions import SchedulingError
from repository import SlotRepository
from scheduling import (
    BookingSlot,
    STANDARD_TIMES,
    canonical_day,
    default_end_time,
    parse_date,
    parse_time_of_day,
    slot_starting_at,
    start_of_week,
)
from schemas import (
    MessageResponse,
    NextClassResponse,
    PrefillResponse,
    SlotFormRequest,
    SlotPageResponse,
    SlotResponse,
    TeacherStatsResponse,
    ValidateAvailabilityRequest,
    ValidateAvailabilityResponse,
    WeekDayItem,
    WeekGridRow,
    WeekResponse
)
from service import SchedulingService

# CONFIG
JWT_SECRET = os.getenv("JWT_SECRET", "EfEmEitch123")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

security = HTTPBearer()
app = FastAPI()

# ---------- DB ----------
async def get_db():
    async with SessionLocal() as session:
        yield session

@app.on_event("startup")
async def startup():
    await init_db()

# ---------- DIRECTORY ----------
def get_directory() -> Directory:
    return Directory()

# ---------- JWT ----------
def get_claims(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> dict:
    try:
        claims = jwt.decode(
            credentials.credentials,
            JWT_SECRET,
            algorithms=[JWT_ALGORITHM]
        )
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")

    # The institution id travels in "sub"
    if not claims.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid token")
    return claims

def get_institution_id(claims: dict = Depends(get_claims)) -> str:
    if claims.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")
    return claims["sub"]

def get_reader_institution_id(claims: dict = Depends(get_claims)) -> str:
    if claims.get("role") not in ("admin", "teacher"):
        raise HTTPException(status_code=403, detail="Admin or teacher access required")
    return claims["sub"]

def get_viewer_institution_id(claims: dict = Depends(get_claims)) -> str:
    if claims.get("role") not in ("admin", "teacher", "student"):
        raise HTTPException(status_code=403, detail="Access denied")
    return claims["sub"]

def get_raw_token(credentials: HTTPAuthorizationCredentials = Depends(security)) -> str:
    return credentials.credentials

# ---------- ERRORS ----------
@app.exception_handler(SchedulingError)
async def scheduling_error_handler(request: Request, exc: SchedulingError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

# ---------- HELPER ----------
def slot_response(slot: BookingSlot) -> SlotResponse:
    return SlotResponse(
        id=slot.id,
        teacher_id=slot.resource_id,
        teacher_name=slot.resource_name,
        subject_id=slot.subject_id,
        subject_name=slot.subject_name,
        day=slot.day_label,
        start=slot.interval.start,
        end=slot.interval.end
    )

def week_anchor(week: Optional[str]) -> date:
    if not week:
        return start_of_week(datetime.now())
    return parse_date(week, "week")

def week_response(view) -> WeekResponse:
    days = []
    for index, (day, slots) in enumerate(view.days.items()):
        days.append(WeekDayItem(
            day=day,
            date=(view.week_start + timedelta(days=index)).isoformat(),
            slots=[slot_response(s) for s in slots]
        ))

    grid = []
    for time_of_day in STANDARD_TIMES:
        cells = {}
        for index, (day, slots) in enumerate(view.days.items()):
            slot = slot_starting_at(slots, view.week_start + timedelta(days=index), time_of_day)
            cells[day] = slot.id if slot else None
        grid.append(WeekGridRow(time=time_of_day.strftime("%H:%M"), cells=cells))

    return WeekResponse(
        week_start=view.week_start.isoformat(),
        label=view.label,
        previous_week=view.previous_week.isoformat(),
        next_week=view.next_week.isoformat(),
        days=days,
        grid=grid
    )

# ---------- API ----------

# 1. CREATE SLOT
@app.post("/timetable/slots", response_model=SlotResponse, status_code=201)
async def create_slot(
    data: SlotFormRequest,
    institution_id: str = Depends(get_institution_id),
    token: str = Depends(get_raw_token),
    directory: Directory = Depends(get_directory),
    db: AsyncSession = Depends(get_db)
):
    service = SchedulingService(SlotRepository(db, institution_id), directory)
    slot = await service.create_slot(data, token)
    return slot_response(slot)

# 2. GET SLOT
@app.get("/timetable/slots/{slot_id}", response_model=SlotResponse)
async def get_slot(
    slot_id: str,
    institution_id: str = Depends(get_reader_institution_id),
    db: AsyncSession = Depends(get_db)
):
    service = SchedulingService(SlotRepository(db, institution_id))
    return slot_response(await service.get_slot(slot_id))

# 3. EDIT SLOT (full replacement)
@app.put("/timetable/slots/{slot_id}", response_model=SlotResponse)
async def update_slot(
    slot_id: str,
    data: SlotFormRequest,
    institution_id: str = Depends(get_institution_id),
    token: str = Depends(get_raw_token),
    directory: Directory = Depends(get_directory),
    db: AsyncSession = Depends(get_db)
):
    service = SchedulingService(SlotRepository(db, institution_id), directory)
    slot = await service.update_slot(slot_id, data, token)
    return slot_response(slot)

# 4. DELETE SLOT
@app.delete("/timetable/slots/{slot_id}", response_model=MessageResponse)
async def delete_slot(
    slot_id: str,
    institution_id: str = Depends(get_institution_id),
    db: AsyncSession = Depends(get_db)
):
    service = SchedulingService(SlotRepository(db, institution_id))
    await service.delete_slot(slot_id)
    return MessageResponse(message="Timetable slot deleted successfully.")

# 5. VALIDATE AVAILABILITY (dry run, nothing is saved)
@app.post("/timetable/validate-availability", response_model=ValidateAvailabilityResponse)
async def validate_availability(
    data: ValidateAvailabilityRequest,
    institution_id: str = Depends(get_institution_id),
    db: AsyncSession = Depends(get_db)
):
    service = SchedulingService(SlotRepository(db, institution_id))
    result = await service.check_availability(data, exclude_booking_id=data.exclude_slot_id)

    if not result.ok:
        return ValidateAvailabilityResponse(
            valid=False,
            reason=result.reason,
            conflict=slot_response(result.conflicting)
        )
    return ValidateAvailabilityResponse(valid=True)

# 6. FORM PREFILL
@app.get("/timetable/prefill", response_model=PrefillResponse)
async def prefill(
    day: Optional[str] = None,
    time: Optional[str] = None,
    institution_id: str = Depends(get_institution_id)
):
    response = PrefillResponse(date=start_of_week(datetime.now()).isoformat())
    if day:
        response.day = canonical_day(day)
    if time:
        start = parse_time_of_day(time, "time")
        end = default_end_time(start)
        response.start_time = start.strftime("%H:%M")
        response.end_time = end.strftime("%H:%M") if end else None
    return response

# 7. WEEK TIMETABLE
@app.get("/timetable", response_model=WeekResponse)
async def get_week(
    week: Optional[str] = None,
    subject_id: Optional[str] = None,
    institution_id: str = Depends(get_reader_institution_id),
    db: AsyncSession = Depends(get_db)
):
    service = SchedulingService(SlotRepository(db, institution_id))
    view = await service.week(week_anchor(week), subject_id=subject_id)
    return week_response(view)

# 8. TEACHER WEEK TIMETABLE
@app.get("/teachers/{teacher_id}/timetable", response_model=WeekResponse)
async def get_teacher_week(
    teacher_id: str,
    week: Optional[str] = None,
    institution_id: str = Depends(get_reader_institution_id),
    db: AsyncSession = Depends(get_db)
):
    service = SchedulingService(SlotRepository(db, institution_id))
    view = await service.week(week_anchor(week), teacher_id=teacher_id)
    return week_response(view)

# 9. TEACHER STATS
@app.get("/teachers/{teacher_id}/stats", response_model=TeacherStatsResponse)
async def get_teacher_stats(
    teacher_id: str,
    institution_id: str = Depends(get_reader_institution_id),
    db: AsyncSession = Depends(get_db)
):
    service = SchedulingService(SlotRepository(db, institution_id))
    stats = await service.teacher_stats(teacher_id)
    return TeacherStatsResponse(
        teacher_id=teacher_id,
        total_slots=stats.total_slots,
        subjects_count=stats.subjects_count,
        weekday_slots=stats.weekday_slots,
        weekend_slots=stats.weekend_slots,
        total_hours=stats.total_hours,
        day_counts=stats.day_counts
    )

# 10. TEACHER SLOT LIST (search, filter, sort, paginate)
@app.get("/teachers/{teacher_id}/slots", response_model=SlotPageResponse)
async def list_teacher_slots(
    teacher_id: str,
    search: Optional[str] = None,
    subject_id: Optional[str] = None,
    day: Optional[str] = None,
    sort: str = "start_time",
    direction: str = "asc",
    page: int = 1,
    per_page: int = 10,
    institution_id: str = Depends(get_reader_institution_id),
    db: AsyncSession = Depends(get_db)
):
    service = SchedulingService(SlotRepository(db, institution_id))
    result = await service.teacher_slots(
        teacher_id,
        search=search,
        subject_id=subject_id,
        day=day,
        sort=sort,
        direction=direction,
        page=page,
        per_page=per_page
    )
    return SlotPageResponse(
        items=[slot_response(s) for s in result.slots],
        total=result.total,
        page=result.page,
        per_page=result.per_page,
        pages=result.pages
    )

# 11. TEACHER UPCOMING CLASSES
@app.get("/teachers/{teacher_id}/upcoming", response_model=List[SlotResponse])
async def get_teacher_upcoming(
    teacher_id: str,
    institution_id: str = Depends(get_reader_institution_id),
    db: AsyncSession = Depends(get_db)
):
    service = SchedulingService(SlotRepository(db, institution_id))
    return [slot_response(s) for s in await service.upcoming_for_teacher(teacher_id)]

# 12. CLASSES ON A DAY (defaults to today), optionally for a student's subjects
@app.get("/timetable/today", response_model=List[SlotResponse])
async def get_classes_today(
    date: Optional[str] = None,
    subject_id: Optional[List[str]] = Query(None),
    institution_id: str = Depends(get_viewer_institution_id),
    db: AsyncSession = Depends(get_db)
):
    day = parse_date(date) if date else datetime.now().date()
    service = SchedulingService(SlotRepository(db, institution_id))
    return [slot_response(s) for s in await service.classes_on(day, subject_ids=subject_id)]

# 13. NEXT CLASS
@app.get("/timetable/next", response_model=NextClassResponse)
async def get_next_class(
    subject_id: Optional[List[str]] = Query(None),
    institution_id: str = Depends(get_viewer_institution_id),
    db: AsyncSession = Depends(get_db)
):
    service = SchedulingService(SlotRepository(db, institution_id))
    slot = await service.next_class(subject_ids=subject_id)
    return NextClassResponse(slot=slot_response(slot) if slot else None)
