"""FastAPI application entrypoint."""

from __future__ import annotations

from contextlib import asynccontextmanager

import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from gigglo.api import ops
from gigglo.domain.identity import StoreProfileDirectory
from gigglo.domain.matching.session import SessionConfig, SessionController
from gigglo.domain.matching.sockets import RouletteNamespace
from gigglo.infra.store import build_store
from gigglo.obs import init as obs_init
from gigglo.settings import settings

roulette_namespace = RouletteNamespace()


@asynccontextmanager
async def lifespan(app: FastAPI):
	obs_init()
	store = build_store(settings)
	profiles = StoreProfileDirectory(store)
	config = SessionConfig.from_settings(settings)
	app.state.store = store
	roulette_namespace.set_controller_factory(
		lambda uid: SessionController(uid, store=store, profiles=profiles, config=config)
	)
	try:
		yield
	finally:
		await roulette_namespace.shutdown()


app = FastAPI(title="Gigglo Roulette", lifespan=lifespan)

allow_origins = list(settings.cors_allow_origins)
if not allow_origins:
	allow_origins = ["http://localhost:3000"] if settings.is_dev() else []

# Starlette disallows wildcard '*' with allow_credentials=True
if "*" in allow_origins:
	allow_origins = ["http://localhost:3000", "http://127.0.0.1:3000"] if settings.is_dev() else []

app.add_middleware(
	CORSMiddleware,
	allow_origins=allow_origins,
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)

# Use the same allowed origins for Socket.IO as for the REST API
sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=allow_origins)
sio.register_namespace(roulette_namespace)
socket_app = socketio.ASGIApp(sio, other_asgi_app=app)

app.include_router(ops.router, tags=["ops"])
