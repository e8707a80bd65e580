from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: str
    email: str
    roles: List[str] = field(default_factory=lambda: ["user"])
    permissions: List[str] = field(default_factory=list)
    is_active: bool = True
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        *,
        roles: Optional[List[str]] = None,
        permissions: Optional[List[str]] = None,
        is_active: bool = True,
    ) -> "Account":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            roles=list(roles) if roles is not None else ["user"],
            permissions=list(permissions or []),
            is_active=is_active,
        )


@dataclass
class SessionRecord:
    """One login lineage as stored in the key-value backend."""

    user_id: str
    session_id: str
    created_at: float
    refresh_token_id: Optional[str] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps(
            {
                "created_at": self.created_at,
                "refresh_token_id": self.refresh_token_id,
                "ip_addr": self.ip_addr,
                "user_agent": self.user_agent,
            },
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, user_id: str, session_id: str, raw: str) -> "SessionRecord":
        data = json.loads(raw)
        return cls(
            user_id=user_id,
            session_id=session_id,
            created_at=float(data.get("created_at") or 0.0),
            refresh_token_id=data.get("refresh_token_id"),
            ip_addr=data.get("ip_addr"),
            user_agent=data.get("user_agent"),
        )
