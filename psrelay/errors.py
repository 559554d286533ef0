"""Project-level exception hierarchy."""


class RelayError(Exception):
    """Base for all psrelay exceptions."""


class ConfigError(RelayError):
    """Configuration is missing or invalid."""


class AuthenticationFailed(RelayError):
    """Webhook signature is missing, malformed or does not match."""


class MalformedPayload(RelayError):
    """Webhook payload violates the schema of an event kind we handle."""

    def __init__(self, message: str, *, excerpt: str = "") -> None:
        super().__init__(message)
        self.excerpt = excerpt


class ChatError(RelayError):
    """Chat session or transport failed."""


class ChatConnectionLost(ChatError):
    """The chat connection dropped or could not be established."""


class LoginFailed(ChatError):
    """The chat login handshake was rejected or timed out."""


class RoomJoinFailed(ChatError):
    """A room could not be joined (banned, nonexistent, ...)."""

    def __init__(self, room: str, reason: str = "") -> None:
        super().__init__(f"Failed to join {room}: {reason}" if reason else f"Failed to join {room}")
        self.room = room
        self.reason = reason
