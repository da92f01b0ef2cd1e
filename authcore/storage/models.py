from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class EmailTokenKind(str, Enum):
    VERIFY = "verify"
    RESET = "reset"


class AuditEventKind(str, Enum):
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    LOGOUT = "logout"
    PASSWORD_CHANGE = "password_change"
    ROLE_CHANGE = "role_change"
    REGISTER = "register"
    EMAIL_VERIFIED = "email_verified"
    PASSWORD_RESET = "password_reset"


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    display_name: str = ""
    is_active: bool = True
    is_verified: bool = False
    failed_login_count: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def public_dict(self) -> Dict[str, Any]:
        """Serializable view without credential or lockout state."""
        return {
            "id": self.id,
            "email": self.email,
            "display_name": self.display_name,
            "is_active": self.is_active,
            "is_verified": self.is_verified,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "last_login_at": self.last_login_at.isoformat() if self.last_login_at else None,
        }


@dataclass
class Role:
    id: int
    name: str
    description: str = ""


@dataclass
class UserRole:
    user_id: str
    role_id: int
    assigned_by: Optional[str] = None
    assigned_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshToken:
    id: str
    user_id: str
    token_hash: str
    issued_at: datetime
    expires_at: datetime
    revoked: bool = False
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None


@dataclass
class EmailToken:
    id: str
    user_id: str
    token_hash: str
    kind: EmailTokenKind
    expires_at: datetime
    used: bool = False


@dataclass
class AuditEvent:
    id: str
    kind: AuditEventKind
    created_at: datetime
    user_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class UserWithRoles:
    user: User
    roles: List[Role]


DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def normalize_paging(page: Optional[int], per_page: Optional[int]) -> tuple[int, int]:
    """Clamp paging input: page >= 1, per_page in 1..100 (default 20)."""
    page = page if page and page > 0 else 1
    if not per_page or per_page < 1 or per_page > MAX_PAGE_SIZE:
        per_page = DEFAULT_PAGE_SIZE
    return page, per_page


@dataclass
class Page(Generic[T]):
    items: List[T]
    page: int
    per_page: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.per_page) if self.per_page else 0


@dataclass
class AuditQuery:
    user_id: Optional[str] = None
    kind: Optional[AuditEventKind] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    page: int = 1
    per_page: int = DEFAULT_PAGE_SIZE
