"""
Identity provider boundary.

Two implementations share one interface:
- LocalIdentityProvider keeps bcrypt hashes in memory and signs its own HS256
  tokens. Used for development and tests.
- GoTrueIdentityProvider talks to a managed auth REST API. Tokens it hands out
  are verified locally with the shared JWT secret, so a request never needs a
  round trip to the auth service just to learn who is calling.

Passwords and tokens are never logged.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional, Protocol

import bcrypt
import requests
from jose import jwt
from jose.exceptions import JWTError

from campus_assist.errors import AuthenticationFailed, StoreUnavailable, ValidationError

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"


@dataclass
class AuthUser:
    """
    `metadata` is profile data the user may edit. `app_metadata` is written
    only by trusted callers and is the sole source of the role.
    """

    user_id: str
    email: str
    metadata: dict = field(default_factory=dict)
    app_metadata: dict = field(default_factory=dict)


@dataclass
class SignInResult:
    access_token: str
    expires_in: int
    user: AuthUser


class IdentityProvider(Protocol):
    def sign_up(self, email: str, password: str, metadata: dict, role: str) -> AuthUser:
        ...

    def sign_in(self, email: str, password: str) -> SignInResult:
        ...

    def verify(self, token: str) -> AuthUser:
        ...


def issue_access_token(
    user: AuthUser, secret: str, audience: str, ttl_seconds: int
) -> str:
    now = int(time.time())
    claims = {
        "sub": user.user_id,
        "email": user.email,
        "user_metadata": dict(user.metadata),
        "app_metadata": dict(user.app_metadata),
        "aud": audience,
        "iat": now,
        "exp": now + ttl_seconds,
    }
    return jwt.encode(claims, secret, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str, secret: str, audience: str) -> AuthUser:
    """Validate signature, audience and expiry; raise AuthenticationFailed otherwise."""
    try:
        claims = jwt.decode(
            token, secret, algorithms=[JWT_ALGORITHM], audience=audience
        )
    except JWTError as exc:
        raise AuthenticationFailed("Your session is invalid or has expired.") from exc
    user_id = claims.get("sub")
    if not user_id:
        raise AuthenticationFailed("Your session is invalid or has expired.")
    return AuthUser(
        user_id=str(user_id),
        email=str(claims.get("email") or ""),
        metadata=dict(claims.get("user_metadata") or {}),
        app_metadata=dict(claims.get("app_metadata") or {}),
    )


def auth_user_from_payload(payload: dict) -> AuthUser:
    """Build an AuthUser from an auth-service user object or a webhook envelope."""
    record = payload.get("record") or payload.get("user") or payload
    user_id = record.get("id")
    email = record.get("email")
    if not user_id or not email:
        raise ValidationError("User payload is missing an id or email.")
    metadata = (
        record.get("raw_user_meta_data")
        or record.get("user_metadata")
        or record.get("data")
        or {}
    )
    app_metadata = record.get("raw_app_meta_data") or record.get("app_metadata") or {}
    return AuthUser(
        user_id=str(user_id),
        email=str(email),
        metadata=dict(metadata),
        app_metadata=dict(app_metadata),
    )


def _hash_password(password: str) -> str:
    # bcrypt only looks at the first 72 bytes.
    return bcrypt.hashpw(password.encode("utf-8")[:72], bcrypt.gensalt()).decode(
        "utf-8"
    )


def _check_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8")[:72], hashed.encode("utf-8"))


class LocalIdentityProvider:
    def __init__(
        self,
        jwt_secret: str,
        audience: str = "authenticated",
        ttl_seconds: int = 3600,
    ):
        self.jwt_secret = jwt_secret
        self.audience = audience
        self.ttl_seconds = ttl_seconds
        self._lock = threading.Lock()
        self._users: dict[str, tuple[AuthUser, str]] = {}

    def sign_up(self, email: str, password: str, metadata: dict, role: str) -> AuthUser:
        key = email.strip().lower()
        hashed = _hash_password(password)
        with self._lock:
            if key in self._users:
                raise ValidationError("A user with this email is already registered.")
            user = AuthUser(
                user_id=uuid.uuid4().hex,
                email=key,
                metadata=dict(metadata),
                app_metadata={"role": role},
            )
            self._users[key] = (user, hashed)
        return user

    def sign_in(self, email: str, password: str) -> SignInResult:
        entry = self._users.get(email.strip().lower())
        if not entry or not _check_password(password, entry[1]):
            raise AuthenticationFailed("Invalid email or password.")
        user = entry[0]
        token = issue_access_token(user, self.jwt_secret, self.audience, self.ttl_seconds)
        return SignInResult(access_token=token, expires_in=self.ttl_seconds, user=user)

    def verify(self, token: str) -> AuthUser:
        return decode_access_token(token, self.jwt_secret, self.audience)


class GoTrueIdentityProvider:
    """
    Client for a GoTrue-compatible auth REST API. `api_key` must be a
    service-role key: accounts are created through the admin endpoint so the
    role lands in app_metadata.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        jwt_secret: str,
        audience: str = "authenticated",
        timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.jwt_secret = jwt_secret
        self.audience = audience
        self.timeout = timeout

    def _headers(self) -> dict:
        return {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _post(self, path: str, payload: dict, params: Optional[dict] = None) -> requests.Response:
        url = f"{self.base_url}/auth/v1/{path}"
        try:
            response = requests.post(
                url,
                headers=self._headers(),
                params=params,
                json=payload,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.exception("Auth service call to %s failed", path)
            raise StoreUnavailable(
                "The sign-in service is temporarily unavailable. Please try again."
            ) from exc
        if response.status_code >= 500:
            logger.error("Auth service %s returned %s", path, response.status_code)
            raise StoreUnavailable(
                "The sign-in service is temporarily unavailable. Please try again."
            )
        return response

    @staticmethod
    def _error_message(response: requests.Response, default: str) -> str:
        try:
            body = response.json()
        except ValueError:
            return default
        return (
            body.get("msg")
            or body.get("error_description")
            or body.get("message")
            or default
        )

    def sign_up(self, email: str, password: str, metadata: dict, role: str) -> AuthUser:
        # Admin endpoint: public signup cannot set app_metadata.
        response = self._post(
            "admin/users",
            {
                "email": email.strip().lower(),
                "password": password,
                "email_confirm": True,
                "user_metadata": metadata,
                "app_metadata": {"role": role},
            },
        )
        if response.status_code >= 400:
            raise ValidationError(
                self._error_message(response, "Could not create the account.")
            )
        return auth_user_from_payload(response.json())

    def sign_in(self, email: str, password: str) -> SignInResult:
        response = self._post(
            "token",
            {"email": email.strip().lower(), "password": password},
            params={"grant_type": "password"},
        )
        if response.status_code >= 400:
            raise AuthenticationFailed("Invalid email or password.")
        body = response.json()
        return SignInResult(
            access_token=body["access_token"],
            expires_in=int(body.get("expires_in") or 0),
            user=auth_user_from_payload(body),
        )

    def verify(self, token: str) -> AuthUser:
        return decode_access_token(token, self.jwt_secret, self.audience)
