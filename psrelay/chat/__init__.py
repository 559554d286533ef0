"""Chat side: capability protocol, session manager and Showdown transport."""

from psrelay.chat.protocol import ChatCredentials
from psrelay.chat.session import ChatSessionManager, ReconnectBackoff, SessionState

__all__ = ["ChatCredentials", "ChatSessionManager", "ReconnectBackoff", "SessionState"]
