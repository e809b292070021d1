"""HTTP API serving the delegate endpoints from a direct-chain query service."""

import json
from typing import Any

from aiohttp import web

from .service import DuelQueryService
from .utils import _json_dumps, _log

SERVICE_KEY = web.AppKey("service", DuelQueryService)


def _json(payload: Any, status: int = 200) -> web.Response:
    return web.Response(
        text=_json_dumps(payload),
        status=status,
        content_type="application/json",
        headers={"Access-Control-Allow-Origin": "*", "Cache-Control": "no-store"},
    )


def _int_param(request: web.Request, name: str, default: int) -> int:
    raw = request.query.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise web.HTTPBadRequest(text=json.dumps({"error": f"{name} must be an integer"}), content_type="application/json")
    if value < 1:
        raise web.HTTPBadRequest(text=json.dumps({"error": f"{name} must be >= 1"}), content_type="application/json")
    return value


def _bad_request(message: str) -> web.Response:
    return _json({"error": message}, status=400)


async def wallet_stats(request: web.Request) -> web.Response:
    service = request.app[SERVICE_KEY]
    try:
        stats = await service.get_wallet_stats(request.match_info["address"])
    except ValueError as exc:
        return _bad_request(str(exc))
    return _json(stats.to_dict())


async def duel_history(request: web.Request) -> web.Response:
    service = request.app[SERVICE_KEY]
    limit = _int_param(request, "limit", 50)
    page = _int_param(request, "page", 1)
    try:
        result = await service.get_duel_history(request.match_info["address"], limit, page)
    except ValueError as exc:
        return _bad_request(str(exc))
    return _json(result.to_dict())


async def live_feed(request: web.Request) -> web.Response:
    service = request.app[SERVICE_KEY]
    limit = _int_param(request, "limit", 20)
    duels = await service.get_recent_duel_activity(limit)
    return _json([d.to_dict() for d in duels])


async def duel_transactions(request: web.Request) -> web.Response:
    service = request.app[SERVICE_KEY]
    try:
        transactions = await service.get_duel_transactions(request.match_info["duel_id"])
    except ValueError as exc:
        return _bad_request(str(exc))
    return _json([t.to_dict() for t in transactions])


async def ecosystem_stats(request: web.Request) -> web.Response:
    service = request.app[SERVICE_KEY]
    return _json(await service.get_ecosystem_stats())


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as exc:
        _log(f"Error handling {request.method} {request.path}: {exc}")
        return _json({"error": "Internal server error"}, status=500)


def create_app(service: DuelQueryService) -> web.Application:
    app = web.Application(middlewares=[error_middleware])
    app[SERVICE_KEY] = service
    app.router.add_get("/api/wallet/{address}", wallet_stats)
    app.router.add_get("/api/duels/{address}", duel_history)
    app.router.add_get("/api/live-feed", live_feed)
    app.router.add_get("/api/duel/{duel_id}/transactions", duel_transactions)
    app.router.add_get("/api/stats", ecosystem_stats)

    async def _startup(app: web.Application) -> None:
        await app[SERVICE_KEY].initialize()

    async def _cleanup(app: web.Application) -> None:
        await app[SERVICE_KEY].close()

    app.on_startup.append(_startup)
    app.on_cleanup.append(_cleanup)
    return app
