"""Run the roulette service: ``python -m gigglo``."""

from __future__ import annotations

import uvicorn

from gigglo.settings import settings


def main() -> None:
	uvicorn.run(
		"gigglo.main:socket_app",
		host=settings.http_host,
		port=settings.http_port,
		log_level=settings.obs_log_level.lower(),
	)


if __name__ == "__main__":
	main()
