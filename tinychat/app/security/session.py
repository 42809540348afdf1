############################################################
#
# tinychat - Streaming LLM Chat Service
#
# session.py: Signed session cookies and request identity
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Request identity.

The external sign-in flow leaves a signed cookie holding an opaque user id.
Requests without a valid cookie are anonymous; their usage is counted per
client IP.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from itsdangerous import BadSignature, URLSafeTimedSerializer

from tinychat.app.settings import Settings, get_settings


@dataclass(frozen=True)
class Identity:
    """Who is making a request."""
    user_id: Optional[str]
    ip_address: str

    @property
    def authenticated(self) -> bool:
        return self.user_id is not None


def _get_session_serializer(settings: Settings) -> URLSafeTimedSerializer:
    """Get a timed serializer for session cookies."""
    return URLSafeTimedSerializer(settings.secret_key, salt="session")


def create_session_token(user_id: str, settings: Optional[Settings] = None) -> str:
    """Sign a user id for the session cookie."""
    settings = settings or get_settings()
    return _get_session_serializer(settings).dumps(user_id)


def get_session_user_id(request: Request, settings: Optional[Settings] = None) -> Optional[str]:
    """Get user ID from signed session cookie."""
    settings = settings or get_settings()
    session_data = request.cookies.get(settings.session_cookie_name)
    if not session_data:
        return None
    try:
        user_id = _get_session_serializer(settings).loads(
            session_data, max_age=settings.session_max_age_seconds
        )
    except BadSignature:
        return None
    return str(user_id) if user_id else None


def get_client_ip(request: Request) -> str:
    """Client address: first X-Forwarded-For hop, else the socket peer, else "unknown"."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def get_identity(request: Request, settings: Optional[Settings] = None) -> Identity:
    return Identity(
        user_id=get_session_user_id(request, settings),
        ip_address=get_client_ip(request),
    )
