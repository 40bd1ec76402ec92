"""
Exception taxonomy for the synchronization layer.

Transport and storage failures derive from ``StoreError``; they are caught at
the operation boundary and turned into user-visible notices. Domain conflicts
derive from ``DomainConflict`` and carry the message shown to the user.
"""


class SyncError(Exception):
    """Base class for every error raised by classroom_sync."""


class StoreError(SyncError):
    """The remote store rejected or failed a request."""


class StoreUnavailable(StoreError):
    """Transient failure; the request may succeed if retried."""


class StoreTimeout(StoreUnavailable):
    """A network read did not complete within the configured timeout."""


class CacheMiss(SyncError):
    """The local cache holds nothing for a cache-scoped read."""


class DomainConflict(SyncError):
    """A business rule prevented the operation."""

    message = 'Operation not allowed.'

    def __init__(self, message=None):
        super().__init__(message or self.message)


class DocumentNotFound(DomainConflict):
    message = 'The requested item no longer exists.'


class InvalidClassCode(DomainConflict):
    message = 'Invalid class code.'


class AlreadyMember(DomainConflict):
    message = 'You are already a member of this class.'


class InviteeNotFound(DomainConflict):
    message = 'No user found with this email.'


class NotATeacher(DomainConflict):
    message = 'The user found is not a teacher.'


class AlreadyTeacher(DomainConflict):
    message = 'This teacher is already in the class.'


class InvitationPending(DomainConflict):
    message = 'An invitation is already pending for this teacher.'


class AlreadyGraded(DomainConflict):
    message = 'This submission has already been graded.'


class InvalidGrade(DomainConflict):
    message = 'Grade is outside the allowed range.'
