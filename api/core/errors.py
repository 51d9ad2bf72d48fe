"""
Error taxonomy for the media lifecycle layer.

Every error carries a short `kind` (what the caller sees) and the HTTP status
the app maps it to. Messages are human-readable and safe to return to clients.
"""

from __future__ import annotations


class LifecycleError(RuntimeError):
    kind = "Error"
    status_code = 500


class StoreUnavailable(LifecycleError):
    kind = "Unavailable"
    status_code = 503


# Raised by the SQL helpers when the driver reports a dead connection.
# The connection cache treats it as a health signal.
class ConnectionLost(StoreUnavailable):
    pass


# A single statement ran past its deadline. The pool is still healthy, so this
# is not a health signal; whether the statement committed is unknown.
class QueryTimeout(StoreUnavailable):
    pass


class UploadRejected(LifecycleError):
    """
    Local constraint violation. No remote call was made.
    """

    kind = "UploadRejected"
    status_code = 400


class UploadFailed(LifecycleError):
    kind = "UploadFailed"
    status_code = 502


class DeleteFailed(LifecycleError):
    kind = "DeleteFailed"
    status_code = 502


class MalformedReference(LifecycleError):
    kind = "MalformedReference"
    status_code = 422


class MissingMedia(LifecycleError):
    kind = "MissingMedia"
    status_code = 400


class RecordValidationError(LifecycleError):
    kind = "ValidationError"
    status_code = 422


class NotFound(LifecycleError):
    kind = "NotFound"
    status_code = 404
