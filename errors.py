"""Typed failures raised by the results engine.

Every error carries an HTTP-ish ``status_code`` and a ``public_message`` that
is safe to show to the caller. Internal detail belongs in the log, never in
``public_message``.
"""


class ResultsError(Exception):
    status_code = 500
    default_message = 'Unable to complete the request.'

    def __init__(self, message=None, fields=None):
        self.public_message = message or self.default_message
        self.fields = dict(fields or {})
        super().__init__(self.public_message)

    def to_dict(self):
        payload = {'message': self.public_message}
        if self.fields:
            payload['errors'] = self.fields
        return payload


class ValidationError(ResultsError):
    status_code = 400
    default_message = 'Invalid request data.'


class AuthorizationError(ResultsError):
    status_code = 403
    default_message = 'You do not have permission to perform this action.'


class AuthenticationRequired(AuthorizationError):
    status_code = 401
    default_message = 'Authentication required.'


class NotFoundError(ResultsError):
    status_code = 404
    default_message = 'The requested record could not be found.'


class StoreUnavailableError(ResultsError):
    status_code = 503
    default_message = 'The results store is temporarily unavailable. Please retry.'


class PartialSaveError(StoreUnavailableError):
    """A batch save failed part-way: earlier chunks stay committed."""

    default_message = 'Some scores could not be saved. Retry the rows that failed.'

    def __init__(self, committed_ids, failed_ids, message=None):
        self.committed_ids = list(committed_ids)
        self.failed_ids = list(failed_ids)
        super().__init__(message)

    def to_dict(self):
        payload = super().to_dict()
        payload['committedIds'] = self.committed_ids
        payload['failedIds'] = self.failed_ids
        return payload
