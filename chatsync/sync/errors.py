from typing import Optional


class SyncError(Exception):
    """Base class for conversation sync failures. None of them are fatal."""


class SendFailure(SyncError):

    def __init__(self, message, cause: Optional[BaseException] = None) -> None:
        self.message = message
        self.cause = cause
        reason = "timed out" if cause is None else str(cause) or type(cause).__name__
        super().__init__(f"Failed to send message to {message.conversation}: {reason}")


class SubscriptionFailure(SyncError):

    def __init__(self, channel: str, reason: str = "stream dropped") -> None:
        self.channel = channel
        super().__init__(f"Subscription to {channel} failed: {reason}")


class EnrichmentFailure(SyncError):

    def __init__(self, sender_id: str, reason: str, retryable: bool = True) -> None:
        self.sender_id = sender_id
        self.retryable = retryable
        super().__init__(f"Could not resolve profile {sender_id}: {reason}")


class RecomputeFailure(SyncError):

    def __init__(self, conversation, cause: BaseException) -> None:
        self.conversation = conversation
        self.cause = cause
        super().__init__(f"Unread recompute for {conversation} failed: {cause}")


class PermissionDenied(SyncError):

    def __init__(self, conversation, user_id: str) -> None:
        self.conversation = conversation
        self.user_id = user_id
        super().__init__(f"{user_id} may not send to {conversation}")
