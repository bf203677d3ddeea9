"""Error taxonomy for survey and vote operations.

Every error carries a stable ``code`` (used in HTTP error bodies and by the
client to re-raise the same type) and the HTTP status the API maps it to.
Validation, duplicate and conflict errors are raised before any write.
"""


class SurveyError(Exception):
    code = "survey_error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(SurveyError):
    """Bad input: blank question, too few options, malformed mobile..."""

    code = "validation_error"
    status_code = 422


class SurveyClosedError(ValidationError):
    code = "survey_closed"
    status_code = 409


class DuplicateVoteError(SurveyError):
    code = "duplicate_vote"
    status_code = 409


class ConflictError(SurveyError):
    """The change would collide with existing votes."""

    code = "conflict"
    status_code = 409


class NotFoundError(SurveyError):
    code = "not_found"
    status_code = 404


class StoreError(SurveyError):
    """Transport or transaction failure in the document store. Safe to retry."""

    code = "store_error"
    status_code = 503


ERRORS_BY_CODE = {
    cls.code: cls
    for cls in (
        SurveyError,
        ValidationError,
        SurveyClosedError,
        DuplicateVoteError,
        ConflictError,
        NotFoundError,
        StoreError,
    )
}
