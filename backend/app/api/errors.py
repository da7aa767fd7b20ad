"""Global error handlers ensuring request_id is included in JSON responses."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.request_id import get_request_id
from app.domain.messaging.exceptions import MessagingError

_LOG = logging.getLogger(__name__)


def install_error_handlers(app: FastAPI) -> None:
	@app.exception_handler(StarletteHTTPException)
	async def http_exc_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
		payload = {"detail": exc.detail, "request_id": get_request_id()}
		return JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))

	@app.exception_handler(RequestValidationError)
	async def validation_exc_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
		payload = {"detail": "validation_error", "errors": jsonable_encoder(exc.errors()), "request_id": get_request_id()}
		return JSONResponse(status_code=422, content=payload)

	@app.exception_handler(MessagingError)
	async def messaging_exc_handler(request: Request, exc: MessagingError):  # type: ignore[override]
		# Endpoints translate their own errors; anything reaching here escaped that mapping.
		_LOG.warning("messaging.unhandled_error", extra={"reason": exc.reason, "path": request.url.path})
		return JSONResponse(status_code=500, content={"detail": exc.reason, "request_id": get_request_id()})
