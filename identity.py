from dataclasses import dataclass
from typing import Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer
from sqlalchemy.orm import Session

from config import get_settings
from errors import Unauthorized
from services import UserService


@dataclass(frozen=True)
class RequestContext:
    """Caller identity for one request, passed explicitly to every operation."""

    user_id: Optional[int]
    client_key: str = "anonymous"

    def require_user(self) -> int:
        if not self.user_id:
            raise Unauthorized("Unauthorized")
        return self.user_id


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.session_secret, salt="ledger-session")


@dataclass(frozen=True)
class SessionClaims:
    external_id: str
    email: Optional[str] = None
    name: Optional[str] = None


def issue_session_token(
    external_id: str, email: Optional[str] = None, name: Optional[str] = None
) -> str:
    payload = {"sub": external_id}
    if email:
        payload["email"] = email
    if name:
        payload["name"] = name
    return _serializer().dumps(payload)


def claims_from_token(token: str) -> Optional[SessionClaims]:
    settings = get_settings()
    try:
        data = _serializer().loads(token, max_age=settings.session_max_age_secs)
    except BadSignature:
        return None
    if not isinstance(data, dict) or not data.get("sub"):
        return None
    return SessionClaims(
        external_id=data["sub"], email=data.get("email"), name=data.get("name")
    )


def external_id_from_token(token: str) -> Optional[str]:
    claims = claims_from_token(token)
    return claims.external_id if claims else None


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def resolve_context(
    session: Session, authorization: Optional[str], client_key: str
) -> RequestContext:
    """Map a bearer token to a local user, creating the user on first sight.

    A token without an ``email`` claim can only resolve users that already
    exist.
    """
    token = bearer_token(authorization)
    claims = claims_from_token(token) if token else None
    if claims is None:
        return RequestContext(user_id=None, client_key=client_key)
    users = UserService(session)
    user = users.by_external_id(claims.external_id)
    if user is None and claims.email:
        user = users.ensure(claims.external_id, claims.email, claims.name)
    return RequestContext(user_id=user.id if user else None, client_key=client_key)
