# Typed failures for the transfer login flow. Each carries the single
# message shown to the user and the HTTP status the routes map it to.


class TransferError(Exception):
    code = "transfer_error"
    status_code = 400
    user_message = "Something went wrong. Please try again."

    def __init__(self, detail: str | None = None):
        super().__init__(detail or self.user_message)
        self.detail = detail or self.user_message


class StoreUnavailable(TransferError):
    code = "store_unavailable"
    status_code = 503
    user_message = "The service is temporarily unavailable. Please try again."


class NotFound(TransferError):
    # Unknown, superseded and already-consumed tokens all look the same
    code = "not_found"
    status_code = 404
    user_message = "Invalid or expired QR code. Generate a new code and scan again."


class Expired(TransferError):
    code = "expired"
    status_code = 410
    user_message = "This QR code has expired. Generate a new code and scan again."


class MalformedPayload(TransferError):
    code = "malformed_payload"
    status_code = 400
    user_message = "That QR code is not a login code."


class PermissionDenied(TransferError):
    code = "permission_denied"
    status_code = 403
    user_message = "Camera permission is required to scan a login code."


class IdentityEstablishFailed(TransferError):
    code = "identity_establish_failed"
    status_code = 401
    user_message = "Could not sign in with this code. Generate a new code and try again."


class NoActiveSession(TransferError):
    code = "no_active_session"
    status_code = 401
    user_message = "No active session found. Please login first."


class ScanInProgress(TransferError):
    code = "scan_in_progress"
    status_code = 409
    user_message = "A scan is already in progress."
