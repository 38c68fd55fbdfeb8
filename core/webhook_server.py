"""
webhook_server.py
=================
aiohttp ingress for chart alerts: ``POST /webhook/{bot_id}`` with the alert
JSON as body.  Pipeline errors are mapped to HTTP status codes here and
nowhere else.
"""
from __future__ import annotations

from typing import Any, Dict

from aiohttp import web

from core.alert_handler import handle_alert
from core.exceptions import (
    ExchangeApiError,
    NotFoundError,
    PositionConflictError,
    RiskGateDenied,
    ValidationError,
)
from utils.event_bus import BUS
from utils.logger import setup_logger

logger = setup_logger(__name__)

COMPONENTS_KEY = web.AppKey("components", dict)


def _error(http_status: int, message: str, **extra: Any) -> web.Response:
    return web.json_response({"error": message, **extra}, status=http_status)


async def webhook(request: web.Request) -> web.Response:
    bot_id = request.match_info["bot_id"]
    body = await request.text()
    components: Dict[str, Any] = request.app[COMPONENTS_KEY]

    try:
        outcome = await handle_alert(body, bot_id=bot_id, components=components)
    except ValidationError as exc:
        return _error(400, str(exc))
    except RiskGateDenied as exc:
        return _error(403, exc.reason, **exc.details)
    except NotFoundError as exc:
        return _error(404, str(exc))
    except PositionConflictError as exc:
        return _error(409, str(exc))
    except ExchangeApiError as exc:
        return _error(502, f"Exchange error: {exc.message}", code=exc.code, exchange_status=exc.status)
    except Exception:
        logger.exception("Unexpected error processing alert for bot %s", bot_id)
        return _error(500, "Internal error")

    payload = {"success": True, **outcome.to_dict()}
    if outcome.action == "duplicate":
        payload["duplicate"] = True
    return web.json_response(payload)


async def health(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok"})


async def _drain_events(app: web.Application) -> None:
    # let queued reconciliations finish before the loop goes away
    await BUS.join()
    BUS.unsubscribe_all()


def create_app(components: Dict[str, Any]) -> web.Application:
    app = web.Application()
    app[COMPONENTS_KEY] = components
    app.on_cleanup.append(_drain_events)
    app.router.add_post("/webhook/{bot_id}", webhook)
    app.router.add_get("/health", health)
    return app
