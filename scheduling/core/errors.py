"""Error kinds raised by the scheduling core.

Each error carries a stable ``kind`` string and a human readable message so
callers can branch on the kind without parsing text.
"""


class SchedulingError(Exception):
    kind = 'scheduling_error'
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {'kind': self.kind, 'message': self.message}


class ValidationError(SchedulingError):
    """Malformed time/date or missing required field."""
    kind = 'validation_error'


class NotFoundError(SchedulingError):
    kind = 'not_found'


class ConflictError(SchedulingError):
    """Candidate interval overlaps an existing slot."""
    kind = 'conflict'

    def __init__(self, message: str, conflicting_slot_id: str | None = None):
        super().__init__(message)
        self.conflicting_slot_id = conflicting_slot_id

    def to_dict(self) -> dict:
        payload = super().to_dict()
        if self.conflicting_slot_id is not None:
            payload['conflicting_slot_id'] = self.conflicting_slot_id
        return payload


class LockedResourceError(SchedulingError):
    """Attempt to move or delete a booked slot."""
    kind = 'locked_resource'


class ConcurrencyError(SchedulingError):
    """Another writer holds the doctor's slot set."""
    kind = 'concurrency_conflict'
    retryable = True


class CredentialMissing(SchedulingError):
    """The doctor has no usable external calendar credential."""
    kind = 'credential_missing'


class ExternalServiceError(SchedulingError):
    kind = 'external_service_error'
    retryable = True

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteEventNotFound(ExternalServiceError):
    kind = 'remote_event_not_found'
    retryable = False


class EventParseError(ValidationError):
    """Remote event payload has an unknown date representation."""
    kind = 'event_parse_error'


class PersistenceError(SchedulingError):
    kind = 'persistence_error'
    retryable = True


class CredentialConfigError(RuntimeError):
    """Encryption key is missing or malformed; fatal at startup."""
