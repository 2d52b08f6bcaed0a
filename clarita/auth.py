import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy.orm import Session

from clarita.config import settings
from clarita.errors import AuthError, UpstreamError, ValidationError
from clarita.models import User

logger = logging.getLogger(__name__)


@dataclass
class ProviderUser:
    id: str
    email: str
    full_name: str = ""
    avatar_url: str = ""
    role: str = "user"

    @classmethod
    def from_payload(cls, payload: dict) -> "ProviderUser":
        metadata = payload.get("user_metadata") or {}
        return cls(
            id=payload["id"],
            email=payload.get("email") or "",
            full_name=metadata.get("full_name") or "",
            avatar_url=metadata.get("avatar_url") or "",
            role=metadata.get("role") or "user",
        )


@dataclass
class ProviderSession:
    user: ProviderUser
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None


@dataclass
class CurrentUser:
    """Identity resolved from the bearer token of one request."""

    id: str
    email: str
    role: str
    token: str


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        for key in ("msg", "error_description", "message", "error"):
            if body.get(key):
                return str(body[key])
    return f"HTTP {response.status_code}"


class SupabaseAuthProvider:
    """Thin client for the hosted auth provider's REST API."""

    def __init__(
        self,
        url: str | None = None,
        anon_key: str | None = None,
        service_role_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.url = (url or settings.supabase_url or "").rstrip("/")
        self.anon_key = anon_key or settings.supabase_anon_key
        self.service_role_key = service_role_key or settings.supabase_service_role_key
        self.timeout = timeout or settings.auth_timeout_seconds
        self.transport = transport

    def _request(self, method: str, path: str, *, api_key: str | None, bearer: str | None = None, **kwargs):
        if not self.url or not api_key:
            raise UpstreamError("Auth provider is not configured")
        headers = {"apikey": api_key, "Authorization": f"Bearer {bearer or api_key}"}
        try:
            with httpx.Client(base_url=self.url, timeout=self.timeout, transport=self.transport) as client:
                return client.request(method, path, headers=headers, **kwargs)
        except httpx.RequestError as exc:
            logger.warning("Auth provider request failed (%s %s): %s", method, path, exc)
            raise UpstreamError("Auth provider is unreachable") from exc

    def get_user(self, token: str) -> Optional[ProviderUser]:
        response = self._request("GET", "/auth/v1/user", api_key=self.anon_key, bearer=token)
        if response.status_code in (401, 403):
            return None
        if response.is_error:
            raise UpstreamError(f"Token validation failed: {_error_message(response)}")
        return ProviderUser.from_payload(response.json())

    def sign_up(self, email: str, password: str, full_name: str = "") -> ProviderUser:
        response = self._request(
            "POST",
            "/auth/v1/admin/users",
            api_key=self.service_role_key,
            json={
                "email": email,
                "password": password,
                "email_confirm": True,
                "user_metadata": {"full_name": full_name},
            },
        )
        if response.status_code < 500 and response.is_error:
            raise ValidationError(_error_message(response))
        if response.is_error:
            raise UpstreamError(f"Signup failed: {_error_message(response)}")
        return ProviderUser.from_payload(response.json())

    def sign_in(self, email: str, password: str) -> ProviderSession:
        response = self._request(
            "POST",
            "/auth/v1/token",
            api_key=self.anon_key,
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        if response.status_code < 500 and response.is_error:
            raise AuthError(_error_message(response))
        if response.is_error:
            raise UpstreamError(f"Signin failed: {_error_message(response)}")
        body = response.json()
        return ProviderSession(
            user=ProviderUser.from_payload(body["user"]),
            access_token=body.get("access_token"),
            refresh_token=body.get("refresh_token"),
            expires_in=body.get("expires_in"),
        )

    def sign_out(self, token: str) -> None:
        response = self._request("POST", "/auth/v1/logout", api_key=self.anon_key, bearer=token)
        if response.status_code in (401, 403):
            raise AuthError("Invalid token")
        if response.is_error:
            raise UpstreamError(f"Signout failed: {_error_message(response)}")


def upsert_user(db: Session, provider_user: ProviderUser, *, overwrite: bool = True) -> User:
    """Mirror the provider's user into the local users table."""
    user = db.get(User, provider_user.id)
    if user is None:
        user = User(
            id=provider_user.id,
            email=provider_user.email,
            full_name=provider_user.full_name,
            profile_image_url=provider_user.avatar_url,
        )
        db.add(user)
    elif overwrite:
        user.email = provider_user.email or user.email
        user.full_name = provider_user.full_name or user.full_name
        user.profile_image_url = provider_user.avatar_url or user.profile_image_url
    else:
        return user
    db.commit()
    db.refresh(user)
    return user
