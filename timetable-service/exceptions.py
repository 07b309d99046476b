class SchedulingError(Exception):
    """Base class for every error the timetable core raises."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# ---------- VALIDATION ----------
class FormValidationError(SchedulingError):
    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field


class InvalidRangeError(SchedulingError):
    pass


class UnknownDayError(SchedulingError):
    def __init__(self, day: str):
        super().__init__(f"Unknown day: {day!r}")
        self.day = day


class UnknownReferenceError(SchedulingError):
    def __init__(self, kind: str, ref_id: str):
        super().__init__(f"Invalid {kind} ID: {ref_id}")
        self.kind = kind
        self.ref_id = ref_id


# ---------- BUSINESS RULES ----------
class ConflictError(SchedulingError):
    status_code = 409

    def __init__(self, slot, message: str):
        super().__init__(message)
        self.slot = slot


class SlotNotFoundError(SchedulingError):
    status_code = 404

    def __init__(self, slot_id: str):
        super().__init__("Timetable slot not found")
        self.slot_id = slot_id


# ---------- INFRASTRUCTURE ----------
class RepositoryError(SchedulingError):
    status_code = 503


class DirectoryUnavailableError(SchedulingError):
    status_code = 503
