"""Error taxonomy shared by the services and the API layer."""


class ChatError(Exception):
    """Base class for every error raised by the chat engine."""


class StoreError(ChatError):
    """The store rejected a request."""


class StoreUnreachable(StoreError):
    """The store could not be reached. Transient; not retried here."""


class ValidationError(ChatError):
    """Input rejected locally, before any store call."""


class NotFoundOrphan(ChatError):
    """A barter request whose skill or counterpart profile cannot be resolved."""

    def __init__(self, barter_request_id, reason: str):
        super().__init__(f"Barter request {barter_request_id} is orphaned: {reason}")
        self.barter_request_id = barter_request_id
        self.reason = reason


class ConversationNotFound(ChatError):
    """The thread does not exist or the current user is not part of it."""

    def __init__(self, barter_request_id):
        super().__init__("Conversation not found")
        self.barter_request_id = barter_request_id


class AuthRequired(ChatError):
    """No signed-in user in the current context."""

    def __init__(self, message: str = "Please sign in to continue"):
        super().__init__(message)
