"""Error taxonomy for the upload-and-persistence pipeline.

Every failure that can reach a caller is a ``WeaverError``.  Each carries:

- ``code``: machine-readable reason code (stable, safe to branch on)
- ``user_message``: short text a UI or bot can show verbatim
- ``status_code``: HTTP status used by the routers
- ``technical_detail``: the underlying cause, for logs only

``to_detail()`` is what the routers send back.  It never contains the
technical detail; that is logged where the error is raised.
"""
from typing import Any, Dict, List, Optional


class WeaverError(Exception):
    """Base exception for pipeline errors."""

    code = "internal_error"
    status_code = 500
    default_user_message = "Something went wrong. Please try again later."

    def __init__(
        self,
        message: str,
        *,
        user_message: Optional[str] = None,
        technical_detail: Optional[str] = None,
        reasons: Optional[List[Dict[str, Any]]] = None,
    ):
        self.message = message
        self.user_message = user_message or self.default_user_message
        self.technical_detail = technical_detail
        self.reasons = reasons or []
        super().__init__(message)

    def to_detail(self) -> Dict[str, Any]:
        detail: Dict[str, Any] = {
            "success": False,
            "error": self.code,
            "message": self.message,
            "userMessage": self.user_message,
        }
        if self.reasons:
            detail["reasons"] = self.reasons
        return detail


class ValidationFailed(WeaverError):
    """User input was rejected. Not retried."""

    code = "validation_failed"
    status_code = 400
    default_user_message = "Your upload was rejected. Check the file and details and try again."


class StorageWriteFailed(WeaverError):
    """The durable object store could not persist the bytes."""

    code = "storage_write_failed"
    status_code = 502
    default_user_message = (
        "Unable to store your file. Please try again with a smaller file "
        "or try again in a few moments."
    )


class StorageDeleteFailed(WeaverError):
    """An object could not be removed from the durable object store."""

    code = "storage_delete_failed"
    status_code = 502


class MetadataCommitFailed(WeaverError):
    """The metadata transaction failed after a successful object-store write."""

    code = "metadata_commit_failed"
    status_code = 500
    default_user_message = "Unable to save your memory. Please try again later."


class ContentAddressUploadFailed(WeaverError):
    """Replication to the content-addressed network failed (never fatal to create)."""

    code = "content_address_upload_failed"
    status_code = 502
    default_user_message = "IPFS backup is currently unavailable."


class PermissionDenied(WeaverError):
    code = "permission_denied"
    status_code = 403
    default_user_message = "You can only change memories you own."


class MemoryNotFound(WeaverError):
    code = "memory_not_found"
    status_code = 404
    default_user_message = "That memory no longer exists."


class SessionNotFound(WeaverError):
    code = "session_not_found"
    status_code = 404
    default_user_message = "Upload session not found or expired. Please start the upload again."


class SessionExpired(WeaverError):
    code = "session_expired"
    status_code = 410
    default_user_message = "Your upload session has expired. Please start the upload again."


class InteractionError(WeaverError):
    """Base for errors raised while acknowledging an external interaction."""

    code = "interaction_error"
    status_code = 502


class InteractionExpired(InteractionError):
    code = "interaction_expired"
    status_code = 410
    default_user_message = "This interaction has expired. Please run the command again."


class AlreadyAcknowledged(InteractionError):
    """The remote side says the interaction was already acknowledged."""

    code = "already_acknowledged"
    status_code = 409


class InteractionDeliveryFailed(InteractionError):
    code = "interaction_delivery_failed"
    status_code = 502
