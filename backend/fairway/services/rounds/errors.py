"""Round/outing service exceptions.

Caller-facing errors carry a wire ``code`` and an HTTP status so the API
layer can render them uniformly. PartialEffectError and TransientStoreError
are only ever logged.
"""


class RoundServiceError(Exception):
    """Base class for all round/outing service errors."""
    code = 'internal'
    status = 500

    def __init__(self, message=None):
        self.message = message or 'Internal error'
        super().__init__(self.message)

    def to_dict(self):
        return {'error': self.message, 'code': self.code}


class Unauthenticated(RoundServiceError):
    code = 'unauthenticated'
    status = 401

    def __init__(self, message='Must be signed in.'):
        super().__init__(message)


class InvalidArgument(RoundServiceError):
    """A precondition was violated; the message names which one."""
    code = 'invalid-argument'
    status = 400


class PermissionDenied(RoundServiceError):
    code = 'permission-denied'
    status = 403


class NotFound(RoundServiceError):
    code = 'not-found'
    status = 404

    def __init__(self, kind, record_id):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind.capitalize()} {record_id} not found")


class Conflict(RoundServiceError):
    """The record changed since the caller read it."""
    code = 'aborted'
    status = 409


class InternalError(RoundServiceError):
    code = 'internal'
    status = 500


class PartialEffectError(RoundServiceError):
    """A secondary step failed after the primary writes succeeded."""

    def __init__(self, step, detail):
        self.step = step
        super().__init__(f"{step} failed: {detail}")


class TransientStoreError(RoundServiceError):
    """A store read/write failed during reconciliation; retried next run."""

    def __init__(self, pass_name, detail):
        self.pass_name = pass_name
        super().__init__(f"{pass_name}: {detail}")
