"""Observability bootstrap: JSON logs, request metrics and optional tracing."""

from __future__ import annotations

from fastapi import FastAPI

from app.obs import logging as obs_logging
from app.obs import middleware, tracing
from app.settings import settings

_initialised = False


def init(app: FastAPI) -> None:
	global _initialised
	if _initialised or not settings.obs_enabled:
		return
	logger = obs_logging.configure_logging()
	middleware.install(app)
	provider = tracing.init_tracing(app)
	logger.info(
		"observability_initialised",
		extra={"tracing": provider is not None, "log_level": settings.obs_log_level},
	)
	_initialised = True


__all__ = ["init"]
