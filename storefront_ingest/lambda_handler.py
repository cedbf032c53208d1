"""
AWS Lambda entry points for storefront order ingestion.

``lambda_handler`` serves both triggers: API Gateway proxy events are routed
to the control and debug endpoints, and EventBridge schedule events run one
round-robin tick followed by the staging transform for that store.
Every HTTP response is JSON with CORS headers, including on errors.
"""

import json
from datetime import datetime, UTC
from typing import Any, Callable, Dict, Optional, Tuple

from storefront_ingest.backfill import backfill
from storefront_ingest.config import Config
from storefront_ingest.db.pool import connection
from storefront_ingest.db.schema import ensure_schema, get_or_create_channel_id
from storefront_ingest.errors import (
    ClaimUnavailableError,
    ConfigurationError,
    UnauthorizedError,
)
from storefront_ingest.health import cursor_report, health_snapshot
from storefront_ingest.ingest import run_ingest, run_round_robin_tick
from storefront_ingest.notifications import alert_on_error, format_alert, get_alert_sink
from storefront_ingest.stores import configured_stores, list_shops, preview_stores, sanitize_domain
from storefront_ingest.transform.upsert import run_transform
from storefront_ingest.utils.logging_utils import (
    log_error,
    log_event,
    log_section_complete,
    log_section_start,
)
from storefront_ingest.utils.state import clear_cursor

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET,POST,OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, X-Requested-With",
}

Route = Callable[[Dict[str, str]], Tuple[int, Dict[str, Any]]]


def _response(status: int, body: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    headers = {"Cache-Control": "no-store", **CORS_HEADERS}
    if body is None:
        return {"statusCode": status, "headers": headers, "body": ""}
    headers["Content-Type"] = "application/json"
    return {"statusCode": status, "headers": headers, "body": json.dumps(body, default=str)}


def _flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() == "true"


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _channel_id(conn: Any) -> int:
    ensure_schema(conn)
    return get_or_create_channel_id(conn, Config.CHANNEL_NAME)


def parse_request(event: Dict[str, Any]) -> Tuple[str, str, Dict[str, str]]:
    """
    Extract method, path and query parameters from an API Gateway event.

    Handles both REST (v1) and HTTP API (v2) payload formats.

    Args:
        event: Lambda proxy event

    Returns:
        Tuple of (METHOD, path, query parameters)
    """
    http = (event.get("requestContext") or {}).get("http") or {}
    method = event.get("httpMethod") or http.get("method") or "GET"
    path = event.get("path") or event.get("rawPath") or "/"
    query = event.get("queryStringParameters") or {}
    return method.upper(), path.rstrip("/") or "/", {k: v for k, v in query.items() if v is not None}


# --- Routes -----------------------------------------------------------------


def ping(query: Dict[str, str]) -> Tuple[int, Dict[str, Any]]:
    return 200, {"ok": True, "now": _now()}


def debug_db(query: Dict[str, str]) -> Tuple[int, Dict[str, Any]]:
    with connection() as conn:
        with conn.cursor() as cursor:
            cursor.execute("SELECT now()")
            now = cursor.fetchone()[0]
    return 200, {"ok": True, "now": now}


def shops(query: Dict[str, str]) -> Tuple[int, Dict[str, Any]]:
    listed = list_shops(configured_stores())
    if not listed:
        return 200, {"ok": False, "error": "No stores configured"}
    return 200, {"ok": True, "shops": listed}


def debug_stores(query: Dict[str, str]) -> Tuple[int, Dict[str, Any]]:
    return 200, {"ok": True, "preview": preview_stores(configured_stores())}


def debug_cursor(query: Dict[str, str]) -> Tuple[int, Dict[str, Any]]:
    stores = configured_stores()
    with connection() as conn:
        cursors = cursor_report(conn, _channel_id(conn), stores)
    return 200, {"ok": True, "cursors": cursors}


def debug_reset(query: Dict[str, str]) -> Tuple[int, Dict[str, Any]]:
    domain = sanitize_domain(query.get("store"))
    if not domain:
        raise ConfigurationError("store param required")
    with connection() as conn:
        clear_cursor(conn, _channel_id(conn), domain)
    return 200, {"ok": True, "cleared": domain}


def debug_health(query: Dict[str, str]) -> Tuple[int, Dict[str, Any]]:
    light = _flag(query.get("light"))
    stores = configured_stores()
    try:
        with connection() as conn:
            return 200, health_snapshot(conn, _channel_id(conn), stores, light=light)
    except Exception as e:
        log_error("Health", e)
        return 500, {
            "ok": False,
            "error": str(e),
            "now": _now(),
            "light": light,
            "stores": [store.domain for store in stores],
        }


def alert_test(query: Dict[str, str]) -> Tuple[int, Dict[str, Any]]:
    sink = get_alert_sink()
    sink.send("Storefront Ingest health check (manual)", format_alert("Manual alert test", "no error"))
    return 200, {"ok": True, "sent": True, "sink": sink.name}


def ingest_run(query: Dict[str, str]) -> Tuple[int, Dict[str, Any]]:
    stores = configured_stores()
    with connection() as conn:
        result = run_ingest(
            conn,
            stores,
            target=query.get("store") or query.get("domain"),
            days=query.get("days"),
            reset=_flag(query.get("reset")),
        )
    return 200, {"ok": True, **result}


def admin_backfill(query: Dict[str, str]) -> Tuple[int, Dict[str, Any]]:
    if Config.BACKFILL_TOKEN and query.get("token", "") != Config.BACKFILL_TOKEN:
        raise UnauthorizedError("unauthorized")
    stores = configured_stores()
    with connection() as conn:
        result = backfill(
            conn,
            stores,
            days=query.get("days"),
            target=query.get("store"),
            hard_reset=_flag(query.get("hard_reset")),
        )
    return 200, {"ok": True, **result}


def admin_transform(query: Dict[str, str]) -> Tuple[int, Dict[str, Any]]:
    if Config.BACKFILL_TOKEN and query.get("token", "") != Config.BACKFILL_TOKEN:
        raise UnauthorizedError("unauthorized")
    domain = sanitize_domain(query.get("store")) or None
    with connection() as conn:
        result = run_transform(conn, _channel_id(conn), domain=domain, full=_flag(query.get("full")))
    return 200, {"ok": True, **result.to_dict()}


ROUTES: Dict[Tuple[str, str], Route] = {
    ("GET", "/api/debug/ping"): ping,
    ("GET", "/api/debug/db"): debug_db,
    ("GET", "/api/shops"): shops,
    ("GET", "/api/debug/stores"): debug_stores,
    ("GET", "/api/debug/cursor"): debug_cursor,
    ("POST", "/api/debug/reset"): debug_reset,
    ("GET", "/api/debug/health"): debug_health,
    ("POST", "/api/debug/alert-test"): alert_test,
    ("POST", "/ingest/shopify/run"): ingest_run,
    ("POST", "/api/admin/backfill"): admin_backfill,
    ("POST", "/api/admin/transform"): admin_transform,
}

# Routes whose unexpected failures send an alert.
ALERT_CONTEXTS = {
    "/ingest/shopify/run": "Manual ingest",
    "/api/admin/backfill": "Admin backfill",
    "/api/admin/transform": "Admin transform",
}


def api_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Route an API Gateway proxy event.

    Args:
        event: Lambda proxy event
        context: Lambda context object

    Returns:
        Proxy response with a JSON body
    """
    method, path, query = parse_request(event)
    if method == "OPTIONS":
        return _response(204, None)

    route = ROUTES.get((method, path))
    if route is None:
        return _response(404, {"ok": False, "error": f"No route for {method} {path}"})

    try:
        status, body = route(query)
        return _response(status, body)
    except UnauthorizedError as e:
        return _response(401, {"ok": False, "error": str(e)})
    except ClaimUnavailableError as e:
        return _response(409, {"ok": False, "error": str(e)})
    except ConfigurationError as e:
        log_error(f"API {path}", e)
        return _response(400, {"ok": False, "error": str(e)})
    except Exception as e:
        log_error(f"API {path}", e)
        alert_on_error(ALERT_CONTEXTS.get(path, "Unhandled request"), e)
        return _response(500, {"ok": False, "error": str(e)})


def scheduled_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    One round-robin tick, then fold that store's staged rows.

    Args:
        event: EventBridge schedule event (unused)
        context: Lambda context object

    Returns:
        Dict containing the tick outcome
    """
    run_timestamp = _now()
    try:
        log_section_start("Scheduled Ingest")
        Config.validate()
        stores = configured_stores()

        with connection() as conn:
            outcome = run_round_robin_tick(conn, stores)
            if outcome["status"] == "error":
                alert_on_error(f"Scheduled ingest ({outcome['store']})", outcome["error"])
            elif outcome["status"] == "ok" and Config.TRANSFORM_AFTER_INGEST:
                result = run_transform(
                    conn, get_or_create_channel_id(conn, Config.CHANNEL_NAME), domain=outcome["store"]
                )
                outcome["transform"] = result.to_dict()

        log_event("Scheduler", "cron:done", store=outcome["store"], status=outcome["status"])
        log_section_complete("Scheduled Ingest", f"{outcome['store']} -> {outcome['status']}")
        return {
            "statusCode": 200,
            "body": json.dumps({"run_timestamp": run_timestamp, **outcome}, default=str),
        }
    except Exception as e:
        log_error("Scheduled Ingest", e)
        alert_on_error("Scheduled ingest", e)
        return {
            "statusCode": 500,
            "body": json.dumps({"error": str(e), "run_timestamp": run_timestamp}),
        }


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """Dispatch to the API or scheduled handler depending on the event shape."""
    event = event or {}
    if "httpMethod" in event or "requestContext" in event or "rawPath" in event:
        return api_handler(event, context)
    return scheduled_handler(event, context)
