import asyncio
import sys
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from fakeredis.aioredis import FakeRedis

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from gigglo.domain.identity import Profile, StaticProfileDirectory
from gigglo.domain.matching.session import SessionConfig, SessionController
from gigglo.infra.store import MemoryStore
from gigglo.main import app
from gigglo.settings import settings

# Short timings so session flows finish in well under a second
FAST_CONFIG = SessionConfig(
	search_timeout_seconds=0.2,
	queue_stale_seconds=30.0,
	session_duration_seconds=300,
	session_extend_seconds=300,
	low_time_threshold_seconds=60,
	timer_tick_seconds=0.05,
	skip_rematch_delay_seconds=0.05,
	partner_skip_grace_seconds=0.05,
	partner_left_grace_seconds=0.05,
	partner_confirm_absent_seconds=0.05,
)


@pytest_asyncio.fixture
async def fake_redis():
	from gigglo.infra.redis import redis_client, set_redis_client
	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture
def fast_config():
	return FAST_CONFIG


@pytest.fixture
def store():
	return MemoryStore()


@pytest.fixture
def profiles():
	directory = StaticProfileDirectory()
	for uid in ("alice", "bob", "carol"):
		directory.put(
			Profile(
				uid=uid,
				is_verified=True,
				display_name=uid.title(),
				group_attributes={"college": "McGill"},
			)
		)
	directory.put(Profile(uid="mallory", is_verified=False, display_name="Mallory"))
	return directory


@pytest_asyncio.fixture
async def make_controller(store, profiles):
	created: list[SessionController] = []

	def _make(uid: str, *, config: SessionConfig = FAST_CONFIG, backing=None) -> SessionController:
		controller = SessionController(uid, store=backing or store, profiles=profiles, config=config)
		created.append(controller)
		return controller

	try:
		yield _make
	finally:
		for controller in created:
			await controller.close()


@pytest.fixture
def eventually():
	async def _eventually(predicate, timeout: float = 2.0, interval: float = 0.01):
		loop = asyncio.get_running_loop()
		deadline = loop.time() + timeout
		while True:
			result = predicate()
			if asyncio.iscoroutine(result):
				result = await result
			if result:
				return result
			if loop.time() >= deadline:
				raise AssertionError("condition not met in time")
			await asyncio.sleep(interval)

	return _eventually


@pytest.fixture
def metrics_public():
	original = settings.obs_metrics_public
	settings.obs_metrics_public = True
	try:
		yield
	finally:
		settings.obs_metrics_public = original


@pytest_asyncio.fixture
async def api_client(store):
	# ASGITransport does not run the lifespan, so install the store directly
	app.state.store = store
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client
