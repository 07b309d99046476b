from pydantic import BaseModel
from typing import List, Optional, Dict
from datetime import datetime

# ---------- SLOT FORM ----------
# Raw form fields; parsing and "required" checks happen in scheduling.validate_slot_form
class SlotFormRequest(BaseModel):
    teacher_id: Optional[str] = None
    subject_id: Optional[str] = None
    day: Optional[str] = None
    date: Optional[str] = None      # Any date in the target week (YYYY-MM-DD)
    start_time: Optional[str] = None  # HH:MM
    end_time: Optional[str] = None    # HH:MM

class SlotResponse(BaseModel):
    id: str
    teacher_id: str
    teacher_name: Optional[str] = None
    subject_id: str
    subject_name: Optional[str] = None
    day: str
    start: datetime
    end: datetime

class MessageResponse(BaseModel):
    message: str

# ---------- VALIDATE AVAILABILITY ----------
class ValidateAvailabilityRequest(SlotFormRequest):
    exclude_slot_id: Optional[str] = None

class ValidateAvailabilityResponse(BaseModel):
    valid: bool
    reason: Optional[str] = None
    conflict: Optional[SlotResponse] = None

# ---------- PREFILL ----------
class PrefillResponse(BaseModel):
    date: str
    day: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None

# ---------- WEEK ----------
class WeekDayItem(BaseModel):
    day: str
    date: str
    slots: List[SlotResponse]

class WeekGridRow(BaseModel):
    time: str
    cells: Dict[str, Optional[str]] # day -> slot id starting at this time

class WeekResponse(BaseModel):
    week_start: str
    label: str
    previous_week: str
    next_week: str
    days: List[WeekDayItem]
    grid: List[WeekGridRow]

# ---------- TEACHER OVERVIEW ----------
class TeacherStatsResponse(BaseModel):
    teacher_id: str
    total_slots: int
    subjects_count: int
    weekday_slots: int
    weekend_slots: int
    total_hours: float
    day_counts: Dict[str, int]

class SlotPageResponse(BaseModel):
    items: List[SlotResponse]
    total: int
    page: int
    per_page: int
    pages: int

# ---------- STUDENT VIEW ----------
class NextClassResponse(BaseModel):
    slot: Optional[SlotResponse] = None
