"""Operations endpoints: probes, metrics and messaging store administration."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel

from app.domain.messaging.store import InMemoryBackingStore, PostgresBackingStore, get_backing_store
from app.obs import health
from app.settings import settings

router = APIRouter(prefix="", tags=["ops"])


class SchemaRequest(BaseModel):
	unique_active_pair: bool = False


def _resolve_token(x_admin_token: Optional[str], authorization: Optional[str]) -> Optional[str]:
	if x_admin_token:
		return x_admin_token
	if authorization and authorization.lower().startswith("bearer "):
		return authorization.split(" ", 1)[1]
	return None


async def require_admin(
	X_Admin_Token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
	authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> None:
	token = settings.obs_admin_token
	if not token:
		raise HTTPException(status.HTTP_403_FORBIDDEN, detail="admin_token_not_configured")
	if _resolve_token(X_Admin_Token, authorization) != token:
		raise HTTPException(status.HTTP_403_FORBIDDEN, detail="forbidden")


async def require_metrics_access(
	X_Admin_Token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
	authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> None:
	if settings.obs_metrics_public:
		return
	await require_admin(X_Admin_Token=X_Admin_Token, authorization=authorization)


@router.get("/health/live")
async def health_live() -> dict[str, str]:
	return await health.liveness()


@router.get("/health/ready")
async def health_ready() -> Response:
	status_code, payload = await health.readiness()
	return JSONResponse(content=payload, status_code=status_code)


@router.get("/metrics")
async def prometheus_metrics(_: None = Depends(require_metrics_access)) -> Response:
	return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.post("/ops/messaging/schema")
async def apply_messaging_schema(payload: SchemaRequest, _: None = Depends(require_admin)) -> dict:
	"""Create the messaging tables, optionally with the one-active-conversation-per-pair index.

	On the in-memory store the index is emulated, so the flag is applied directly.
	"""
	store = get_backing_store()
	if isinstance(store, PostgresBackingStore):
		await store.ensure_schema(unique_active_pair=payload.unique_active_pair)
		backend = "postgres"
	else:
		if isinstance(store, InMemoryBackingStore):
			store.unique_active_pair = payload.unique_active_pair
		backend = "memory"
	return {"ok": True, "store": backend, "unique_active_pair": payload.unique_active_pair}
