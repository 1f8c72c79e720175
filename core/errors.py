"""
Netyora Chat - Error Types

Every failure raised by the chat services is a ChatError. Each subclass
carries the HTTP status and machine readable code used by the API layer
and by the realtime gateway when it reports errors as events.
"""
from typing import Any, Dict, Optional


class ChatError(Exception):
    """Base chat error"""

    status_code = 500
    code = "internal"

    def __init__(self, message: str = None, **details: Any):
        self.message = message or self.__class__.__doc__ or self.code
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class UnauthenticatedError(ChatError):
    """Missing or invalid credential"""
    status_code = 401
    code = "unauthenticated"


class ForbiddenError(ChatError):
    """Participant or authorship check failed"""
    status_code = 403
    code = "forbidden"


class NotFoundError(ChatError):
    """Chat, message or peer not found"""
    status_code = 404
    code = "not_found"


class PeerNotFoundError(NotFoundError):
    """Recipient user not found"""
    code = "peer_not_found"


class InvalidArgumentError(ChatError):
    """Invalid request"""
    status_code = 400
    code = "invalid_argument"


class SelfChatForbiddenError(InvalidArgumentError):
    """Cannot create a chat with yourself"""
    code = "self_chat_forbidden"


class InvalidMembershipError(InvalidArgumentError):
    """A chat needs at least two participants"""
    code = "invalid_membership"


class StructuralError(ChatError):
    """Attachment is missing required fields"""
    status_code = 400
    code = "structural"


class GoneError(ChatError):
    """Attachment has been deleted or expired"""
    status_code = 410
    code = "gone"


class ConflictError(ChatError):
    """Conflicting concurrent update"""
    status_code = 409
    code = "conflict"


class UpstreamError(ChatError):
    """An external service failed"""
    status_code = 500
    code = "upstream"

    def __init__(self, message: str = None, service: Optional[str] = None, **details: Any):
        if service:
            details["service"] = service
        super().__init__(message, **details)


class DataCorruptionError(ChatError):
    """Chat contains messages of an unknown kind"""
    status_code = 500
    code = "data_corruption"
