"""Visitor identity assignment backed by a long-lived browser cookie."""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

VISITOR_COOKIE_NAME = "visitor_id"
VISITOR_COOKIE_MAX_AGE = 365 * 24 * 60 * 60


@dataclass(frozen=True)
class CookieDirective:
    """Instruction for the HTTP layer to persist the visitor id client-side."""

    value: str
    name: str = VISITOR_COOKIE_NAME
    max_age: int = VISITOR_COOKIE_MAX_AGE
    httponly: bool = True
    samesite: str = "lax"
    secure: bool = False
    domain: Optional[str] = None

    def as_cookie_kwargs(self) -> Dict[str, Any]:
        return {
            "key": self.name,
            "value": self.value,
            "max_age": self.max_age,
            "httponly": self.httponly,
            "samesite": self.samesite,
            "secure": self.secure,
            "domain": self.domain,
        }


@dataclass(frozen=True)
class VisitorIdentity:
    visitor_id: str
    is_new: bool
    cookie: Optional[CookieDirective] = None


def resolve_visitor(
    cookie_value: Optional[str],
    *,
    secure: bool,
    domain: Optional[str] = None,
    id_factory: Callable[[], uuid.UUID] = uuid.uuid4,
) -> VisitorIdentity:
    """Reuse the visitor id carried by the request or mint a new one.

    An existing id is returned verbatim. A minted id comes with the cookie
    directive the caller must attach to its response.
    """
    if cookie_value:
        return VisitorIdentity(visitor_id=cookie_value, is_new=False)

    visitor_id = str(id_factory())
    directive = CookieDirective(value=visitor_id, secure=secure, domain=domain)
    return VisitorIdentity(visitor_id=visitor_id, is_new=True, cookie=directive)
