"""Error taxonomy shared by the services and the HTTP layer."""


class AssetTrackerError(Exception):
    """Base class for errors surfaced to the caller.

    ``field`` names the offending input field when there is one, so the
    presentation layer can render a field-level message.
    """

    status_code = 400

    def __init__(self, message, field=None):
        super().__init__(message)
        self.message = message
        self.field = field

    def to_dict(self):
        payload = {'error': self.message}
        if self.field:
            payload['field'] = self.field
        return payload


class ValidationError(AssetTrackerError):
    status_code = 400


class NotFoundError(AssetTrackerError):
    status_code = 404


class ConflictError(AssetTrackerError):
    status_code = 409


class AuthorizationError(AssetTrackerError):
    status_code = 403


class ImportFileError(AssetTrackerError):
    """The uploaded import file could not be read at all."""
    status_code = 400


class AuditWriteError(AssetTrackerError):
    """An audit entry could not be stored. Logged, never raised to callers."""
    status_code = 500
