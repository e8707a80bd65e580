from __future__ import annotations

import threading
import time
from dataclasses import asdict, dataclass, field
from typing import List, Optional, Protocol, Union

from chatauth.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class UserLoggedIn:
    user_id: str
    session_id: str
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    occurred_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class UserLoggedOut:
    user_id: str
    session_id: str
    occurred_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class SessionTerminated:
    user_id: str
    session_id: str
    reason: str = "terminated"
    occurred_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class AllSessionsTerminated:
    user_id: str
    except_session_id: Optional[str]
    terminated_count: int
    occurred_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class LoginFailed:
    user_id: Optional[str]
    ip_addr: Optional[str] = None
    occurred_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class AccountLocked:
    user_id: Optional[str]
    locked_until: float
    occurred_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class PasswordResetRequested:
    """Carries the one-time reset token to whatever delivers it to the user."""

    user_id: str
    email: str
    reset_token: str
    occurred_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class PasswordResetCompleted:
    user_id: str
    terminated_count: int
    occurred_at: float = field(default_factory=time.time)


AuthEvent = Union[
    UserLoggedIn,
    UserLoggedOut,
    SessionTerminated,
    AllSessionsTerminated,
    LoginFailed,
    AccountLocked,
    PasswordResetRequested,
    PasswordResetCompleted,
]


class EventSink(Protocol):
    def publish(self, event: AuthEvent) -> None: ...


class LoggingEventSink:
    """Writes domain events to the structured log; shipping them is external."""

    def publish(self, event: AuthEvent) -> None:
        logger.info("auth_event", event_type=type(event).__name__, **asdict(event))


class RecordingEventSink:
    """Keeps published events in memory."""

    def __init__(self) -> None:
        self.events: List[AuthEvent] = []
        self._lock = threading.Lock()

    def publish(self, event: AuthEvent) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: type) -> List[AuthEvent]:
        with self._lock:
            return [event for event in self.events if isinstance(event, event_type)]
