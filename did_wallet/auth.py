"""
Session capability checks.

Users sign in through the external identity provider; ``sign_in`` turns that
sign-in into a bearer token bound to a profile. ``authenticate`` maps the
token back and exposes the caller as a ``CurrentUser`` computed once per
request.
"""

import hashlib
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from .db import session_scope
from .errors import AuthenticationError, ConflictError, PermissionDeniedError, ValidationError
from .logger import get_logger
from .models import Profile, Role

log = get_logger("did_wallet.auth")


@dataclass(frozen=True)
class CurrentUser:
    id: str
    email: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value

    def require(self, *roles: Role) -> None:
        """Raise PermissionDeniedError unless the caller holds one of ``roles``"""
        allowed = {r.value for r in roles}
        if self.role not in allowed:
            raise PermissionDeniedError(
                f"Requires role: {', '.join(sorted(allowed))}"
            )


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def ensure_profile(
    session,
    user_id: str,
    email: str,
    full_name: Optional[str] = None,
    admin_emails: Iterable[str] = (),
) -> Profile:
    """Create the profile on first sign-in, otherwise return the stored one"""
    profile = session.get(Profile, user_id)
    if profile is not None:
        return profile

    role = Role.ADMIN if email.lower() in {e.lower() for e in admin_emails} else Role.HOLDER
    profile = Profile(id=user_id, email=email, full_name=full_name, role=role.value)
    session.add(profile)
    session.flush()
    log.info(f"Profile created for {user_id} with role {role.value}")
    return profile


def issue_api_token(session, profile: Profile) -> str:
    """Bind a fresh bearer token to ``profile`` and return it"""
    token = secrets.token_urlsafe(32)
    profile.api_token_hash = hash_token(token)
    session.flush()
    return token


def sign_in(
    Session,
    user_id: str,
    email: str,
    full_name: Optional[str] = None,
    admin_emails: Iterable[str] = (),
) -> Dict[str, Any]:
    """
    Exchange an identity provider sign-in for an API token

    The profile is created on first sign-in; every call rotates the token.

    Raises:
        ValidationError: missing user id or invalid email
        ConflictError: email already bound to another user id
    """
    user_id = (user_id or "").strip()
    email = (email or "").strip()
    if not user_id or "@" not in email:
        raise ValidationError("User id and a valid email are required")

    try:
        with session_scope(Session) as session:
            profile = ensure_profile(session, user_id, email, full_name, admin_emails)
            token = issue_api_token(session, profile)
            data = profile.to_dict()
    except IntegrityError as e:
        raise ConflictError("Email is already registered to another user") from e

    log.info(f"User {user_id} signed in")
    return {"token": token, "profile": data}


def authenticate(session, authorization: Optional[str]) -> CurrentUser:
    """
    Resolve an ``Authorization`` header to the calling user

    Raises:
        AuthenticationError: header missing, malformed or unknown token
    """
    if not authorization:
        raise AuthenticationError("Unauthorized")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Unauthorized")

    profile = session.scalars(
        select(Profile).where(Profile.api_token_hash == hash_token(token.strip()))
    ).first()
    if profile is None:
        raise AuthenticationError("Unauthorized")

    return CurrentUser(id=profile.id, email=profile.email, role=profile.role)
