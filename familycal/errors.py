from __future__ import annotations


class CalendarError(Exception):
    status_code = 400


class NotFound(CalendarError, LookupError):
    status_code = 404


class ValidationError(CalendarError, ValueError):
    pass


class InvalidScope(ValidationError):
    pass


class InvalidRecurrenceRule(ValidationError):
    pass


class AmbiguousTruncation(ValidationError):
    pass


class InvalidOccurrence(ValidationError):
    pass


class InvalidWindow(ValidationError):
    pass


class WindowTooLarge(InvalidWindow):
    pass


class NotATask(ValidationError):
    pass


class MissingIdentity(ValidationError):
    pass


class CrossFamilyAccess(CalendarError, PermissionError):
    status_code = 403


class PermissionDenied(CalendarError, PermissionError):
    status_code = 403


class WriteFailure(CalendarError, RuntimeError):
    status_code = 500
