from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    name: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshSession:
    id: str
    user_id: str
    token: str
    expires_at: datetime
    user_agent: str = "unknown"
    ip_address: str = "unknown"
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token: str,
        ttl: timedelta,
        user_agent: str = "unknown",
        ip_address: str = "unknown",
        *,
        now: Optional[datetime] = None,
    ) -> "RefreshSession":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token=token,
            expires_at=now + ttl,
            user_agent=user_agent,
            ip_address=ip_address,
            created_at=now,
            last_used_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        expires_at = self.expires_at
        # Rows written by older deployments may carry naive UTC timestamps
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= (now or utcnow())
