"""
Inbound HTTP surface (aiohttp.web):

  GET  /health
  GET|POST /api/cron/check-alerts     bearer ADMIN_TOKEN or CRON_SECRET, bounded by CRON_DEADLINE_S
  POST /api/telegram/webhook          chat callback buttons -> ActionHandler
  POST /api/alerts/{id}/reset         admin
  POST /api/alerts/{id}/trigger       admin, manual delivery test
"""
from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Optional

import structlog
from aiohttp import web

from pricealert.alerts.actions import ActionHandler, outcome_text, parse_callback
from pricealert.alerts.evaluator import AlertNotIdle, Evaluator, PriceUnavailable
from pricealert.alerts.state import AlertStateMachine
from pricealert.utils.types import DeliveryContext
from storage.errors import NotFoundError, StoreError, StoreTimeoutError

log = structlog.get_logger("web")


@dataclass(slots=True)
class WebDeps:
    evaluator: Evaluator
    machine: AlertStateMachine
    actions: ActionHandler
    notifier: object  # anything with answer_callback() is used for callback acks
    admin_token: str
    cron_secret: Optional[str] = None
    cron_deadline_s: float = 9.0
    webhook_secret: Optional[str] = None


DEPS = web.AppKey("deps", WebDeps)


def _bearer(request: web.Request) -> Optional[str]:
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth[len("Bearer "):].strip() or None


def _token_ok(given: Optional[str], *accepted: Optional[str]) -> bool:
    if not given:
        return False
    return any(a and hmac.compare_digest(given.encode(), a.encode()) for a in accepted)


def _unauthorized() -> web.Response:
    return web.json_response({"error": "Unauthorized"}, status=401)


def _store_unavailable(e: StoreError) -> web.Response:
    return web.json_response({"error": "store unavailable", "message": str(e)}, status=503)


def _alert_id(request: web.Request) -> Optional[int]:
    try:
        v = int(request.match_info["alert_id"])
    except (KeyError, ValueError):
        return None
    return v if v > 0 else None


async def health(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok"})


async def cron_check_alerts(request: web.Request) -> web.Response:
    deps = request.app[DEPS]
    if not _token_ok(_bearer(request), deps.admin_token, deps.cron_secret):
        return _unauthorized()
    try:
        res = await deps.evaluator.evaluate_all(deadline_s=deps.cron_deadline_s)
    except StoreTimeoutError as e:
        log.error("cron_store_timeout", err=str(e))
        return web.json_response({"error": "store timeout", "message": str(e)}, status=503)
    except StoreError as e:
        log.error("cron_store_unavailable", err=str(e))
        return _store_unavailable(e)
    body = res.to_dict()
    if res.timed_out:
        body["error"] = "deadline exceeded"
        return web.json_response(body, status=504)
    return web.json_response(body)


async def telegram_webhook(request: web.Request) -> web.Response:
    deps = request.app[DEPS]
    if deps.webhook_secret:
        given = request.headers.get("X-Telegram-Bot-Api-Secret-Token", "")
        if not hmac.compare_digest(given.encode(), deps.webhook_secret.encode()):
            return _unauthorized()
    try:
        update = await request.json()
    except ValueError:
        return web.json_response({"error": "invalid json"}, status=400)

    cq = (update or {}).get("callback_query") if isinstance(update, dict) else None
    if not cq:
        # messages / menus belong to the chat layer; acknowledge so Telegram stops retrying
        return web.json_response({"ok": True, "handled": False})

    msg = cq.get("message") or {}
    delivery = DeliveryContext(
        handle=str(msg["message_id"]) if msg.get("message_id") is not None else None,
        user_id=str((cq.get("from") or {}).get("id")) if (cq.get("from") or {}).get("id") is not None else None,
    )
    action = parse_callback(cq.get("data") or "", delivery)
    if action is None:
        return web.json_response({"ok": True, "handled": False})

    try:
        outcome = await deps.actions.handle(action)
    except StoreError as e:
        log.error("callback_store_error", alert_id=action.alert_id, err=str(e))
        return web.json_response({"ok": False, "error": "store unavailable"}, status=503)

    answer = getattr(deps.notifier, "answer_callback", None)
    if answer is not None and cq.get("id"):
        await answer(str(cq["id"]), outcome_text(action.kind, outcome))
    return web.json_response({"ok": True, "handled": True, "outcome": outcome.value})


async def reset_alert(request: web.Request) -> web.Response:
    deps = request.app[DEPS]
    if not _token_ok(_bearer(request), deps.admin_token):
        return _unauthorized()
    alert_id = _alert_id(request)
    if alert_id is None:
        return web.json_response({"error": "invalid alert id"}, status=400)
    try:
        found = await deps.machine.reset(alert_id)
    except StoreError as e:
        log.error("reset_store_error", alert_id=alert_id, err=str(e))
        return _store_unavailable(e)
    if not found:
        return web.json_response({"error": "alert not found"}, status=404)
    return web.json_response({"success": True, "alert_id": alert_id})


async def trigger_alert(request: web.Request) -> web.Response:
    deps = request.app[DEPS]
    if not _token_ok(_bearer(request), deps.admin_token):
        return _unauthorized()
    alert_id = _alert_id(request)
    if alert_id is None:
        return web.json_response({"error": "invalid alert id"}, status=400)
    try:
        out = await deps.evaluator.trigger_now(alert_id)
    except NotFoundError:
        return web.json_response({"error": "alert not found"}, status=404)
    except AlertNotIdle as e:
        return web.json_response({"error": str(e)}, status=409)
    except PriceUnavailable as e:
        return web.json_response({"error": str(e)}, status=502)
    except StoreError as e:
        log.error("trigger_store_error", alert_id=alert_id, err=str(e))
        return _store_unavailable(e)
    return web.json_response({"success": True, **out})


def create_app(deps: WebDeps) -> web.Application:
    app = web.Application()
    app[DEPS] = deps
    app.router.add_get("/health", health)
    app.router.add_route("GET", "/api/cron/check-alerts", cron_check_alerts)
    app.router.add_route("POST", "/api/cron/check-alerts", cron_check_alerts)
    app.router.add_post("/api/telegram/webhook", telegram_webhook)
    app.router.add_post("/api/alerts/{alert_id}/reset", reset_alert)
    app.router.add_post("/api/alerts/{alert_id}/trigger", trigger_alert)
    return app
