"""
HTTP interface for the storyrank leaderboard engine.

Endpoints:
- GET  /leaderboard?offset&limit     paginated ranking
- GET  /leaderboard/rank/{userId}    single-user rank (404 when not ranked)
- POST /events                       inbound signal events (object or list)
- GET  /health                       engine status
"""

import json
import logging

from aiohttp import web

from storyrank.constants import EngineStatus, PaginationConstants
from storyrank.data_models.leaderboard import ApplyOutcome
from storyrank.services.engine import LeaderboardEngine

logger = logging.getLogger(__name__)

ENGINE_KEY = web.AppKey("engine", LeaderboardEngine)


def _error(status: int, error: str, message: str) -> web.Response:
    return web.json_response({"error": error, "message": message}, status=status)


def _int_param(request: web.Request, name: str, default: int) -> int:
    raw = request.query.get(name)
    if raw is None or raw == "":
        return default
    return int(raw)


async def leaderboard_handler(request: web.Request) -> web.Response:
    """Handle GET /leaderboard."""
    engine = request.app[ENGINE_KEY]
    try:
        offset = _int_param(request, "offset", 0)
        limit = _int_param(request, "limit", PaginationConstants.DEFAULT_PAGE_SIZE)
        page = engine.leaderboard.get_page(offset, limit)
    except ValueError as e:
        return _error(400, "BadRequest", str(e))
    return web.json_response(page.to_dict())


async def user_rank_handler(request: web.Request) -> web.Response:
    """Handle GET /leaderboard/rank/{userId}."""
    engine = request.app[ENGINE_KEY]
    user_id = request.match_info["userId"]
    user_rank = engine.leaderboard.get_user_rank(user_id)
    if user_rank is None:
        return _error(404, "NotFound", f"User '{user_id}' has no leaderboard entry")
    return web.json_response(user_rank.to_dict())


async def events_handler(request: web.Request) -> web.Response:
    """Handle POST /events; queues events on the collector shards."""
    engine = request.app[ENGINE_KEY]
    if engine.status == EngineStatus.REBUILDING:
        return _error(503, "Unavailable", "Leaderboard is rebuilding; events are not accepted")

    try:
        body = await request.json()
    except json.JSONDecodeError:
        return _error(400, "BadRequest", "Request body must be JSON")

    events = body if isinstance(body, list) else [body]
    queued = 0
    rejected = 0
    for event in events:
        outcome = await engine.submit(event)
        if outcome == ApplyOutcome.REJECTED:
            rejected += 1
        else:
            queued += 1

    logger.debug(f"POST /events queued={queued} rejected={rejected}")
    return web.json_response({"queued": queued, "rejected": rejected}, status=202)


async def health_handler(request: web.Request) -> web.Response:
    """Handle GET /health."""
    engine = request.app[ENGINE_KEY]
    snapshot = engine.rank_index.snapshot()
    status_code = 200 if engine.status in (EngineStatus.HEALTHY, EngineStatus.DEGRADED) else 503
    return web.json_response({
        "status": engine.status,
        "snapshotVersion": snapshot.version,
        "totalUsers": snapshot.total_users,
    }, status=status_code)


def create_app(engine: LeaderboardEngine) -> web.Application:
    """Build the aiohttp application around an engine instance."""
    app = web.Application()
    app[ENGINE_KEY] = engine
    app.router.add_get("/leaderboard", leaderboard_handler)
    app.router.add_get("/leaderboard/rank/{userId}", user_rank_handler)
    app.router.add_post("/events", events_handler)
    app.router.add_get("/health", health_handler)
    return app


async def start_http_server(engine: LeaderboardEngine, host: str, port: int) -> web.AppRunner:
    """Start the HTTP server and return its runner (call runner.cleanup() to stop)."""
    runner = web.AppRunner(create_app(engine))
    await runner.setup()

    site = web.TCPSite(runner, host, port)
    await site.start()

    logger.info(f"HTTP server started on http://{host}:{port}")
    return runner
