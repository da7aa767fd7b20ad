"""Authentication helpers for FastAPI endpoints and Socket.IO connections.

Session management lives in the marketplace auth service. Here we only verify
its bearer tokens; in development the ``X-User-Id`` header is accepted too.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import InvalidTokenError

from app.infra import jwt as jwt_helper
from app.settings import settings

_INVALID_IDS = frozenset({"", "undefined", "null"})


@dataclass(slots=True)
class AuthenticatedUser:
	id: str
	role: Optional[str] = None
	display_name: Optional[str] = None


_bearer_scheme = HTTPBearer(auto_error=False)


def verify_access_jwt(token: str) -> AuthenticatedUser:
	try:
		payload = jwt_helper.decode_access(token)
	except InvalidTokenError:
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token") from None
	role = payload.get("user_type") or payload.get("role")
	name = payload.get("name") or payload.get("display_name")
	return AuthenticatedUser(
		id=str(payload["sub"]).strip(),
		role=str(role) if role else None,
		display_name=str(name) if name else None,
	)


def user_from_header(value: Optional[str]) -> Optional[AuthenticatedUser]:
	user_id = (value or "").strip()
	if user_id.lower() in _INVALID_IDS:
		return None
	return AuthenticatedUser(id=user_id)


async def get_current_user(
	x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
	credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> AuthenticatedUser:
	"""Resolve the authenticated user.

	Bearer tokens are always accepted; the header fallback only in development.
	"""
	if credentials and credentials.scheme.lower() == "bearer":
		return verify_access_jwt(credentials.credentials)
	if settings.is_dev():
		user = user_from_header(x_user_id)
		if user is not None:
			return user
	raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token")


def authenticate_socket(auth_payload: Optional[dict], header_user_id: Optional[str]) -> AuthenticatedUser:
	"""Socket.IO flavour of ``get_current_user``; raises ConnectionRefusedError."""
	payload = auth_payload or {}
	token = str(payload.get("token") or "").strip()
	if token:
		try:
			return verify_access_jwt(token)
		except HTTPException:
			raise ConnectionRefusedError("invalid_token") from None
	if settings.is_dev():
		user = user_from_header(payload.get("userId") or header_user_id)
		if user is not None:
			return user
	raise ConnectionRefusedError("unauthenticated")
