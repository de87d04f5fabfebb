"""Health check helpers for liveness and readiness probes."""

from __future__ import annotations

import asyncio
import logging
from time import perf_counter
from typing import Any, Dict

from gigglo.infra.store import Store
from gigglo.obs import metrics
from gigglo.settings import settings

LOGGER = logging.getLogger(__name__)


async def _store_status(store: Store, timeout: float = 0.2) -> Dict[str, Any]:
	start = perf_counter()
	try:
		await asyncio.wait_for(store.ping(), timeout=timeout)
		latency = perf_counter() - start
		metrics.mark_store(True, latency_seconds=latency)
		return {"ok": True, "latency_ms": round(latency * 1000, 2)}
	except Exception as exc:  # pragma: no cover - depends on runtime
		metrics.mark_store(False)
		LOGGER.warning("Store readiness check failed", exc_info=True)
		return {"ok": False, "error": str(exc) or exc.__class__.__name__}


def liveness() -> Dict[str, Any]:
	return {"status": "ok", "service": settings.service_name, "commit": settings.git_commit}


async def readiness(store: Store) -> Dict[str, Any]:
	store_status = await _store_status(store)
	return {
		"status": "ok" if store_status["ok"] else "degraded",
		"backend": settings.store_backend,
		"store": store_status,
	}
