import hmac
import logging
from typing import Any, Dict

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

import db
from app.errors import StoreUnavailable
from app.services.container import Services, build_services
from app.types.contracts import InboundEvent, StatusCallback
from app.utils.redis_client import create_async_redis
from config import settings

logging.basicConfig(
    level=getattr(logging, str(settings.LOG_LEVEL).upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
_LOGGER = logging.getLogger("prima.webhooks")

INCOMING_ROUTE = "/api/webhooks/incoming"
STATUS_ROUTE = "/api/webhooks/message-status"

app = FastAPI(title="PRIMA patient-response webhooks")

# Services are created on startup unless a caller (tests) pre-wired app.state.services.


@app.on_event("startup")
async def startup_event():
    if getattr(app.state, "services", None) is not None:
        app.state.owns_services = False
        return
    engine = db.create_engine()
    redis = create_async_redis(settings.REDIS_URL)
    services = build_services(settings, db.make_session_maker(engine), redis)
    app.state.engine = engine
    app.state.redis = redis
    app.state.services = services
    app.state.owns_services = True
    if settings.WORKER_ENABLED:
        await services.worker.start()
    _LOGGER.info("Webhook service started (worker=%s)", settings.WORKER_ENABLED)


@app.on_event("shutdown")
async def shutdown_event():
    if not getattr(app.state, "owns_services", False):
        return
    await app.state.services.worker.stop()
    await app.state.redis.aclose()
    await db.dispose_engine(app.state.engine)


# --------------------------------------------
# Errors
# --------------------------------------------


@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
    _LOGGER.error("Store unavailable on %s: %s", request.url.path, exc)
    return JSONResponse({"ok": False, "error": "Store unavailable"}, status_code=500)


def _invalid(issues: Dict[str, list]) -> JSONResponse:
    return JSONResponse({"error": "Invalid payload", "issues": issues}, status_code=400)


def _issues(exc: ValidationError) -> Dict[str, list]:
    issues: Dict[str, list] = {}
    for err in exc.errors():
        field = str(err["loc"][0]) if err.get("loc") else "body"
        issues.setdefault(field, []).append(err["msg"])
    return issues


# --------------------------------------------
# Helpers
# --------------------------------------------


def _services(request: Request) -> Services:
    return request.app.state.services


def _require_token(request: Request) -> None:
    """401 when no token is presented (or none is configured), 403 when it is wrong."""
    if settings.WEBHOOK_AUTH_DISABLED:
        return
    auth = request.headers.get("authorization", "")
    supplied = (
        (auth[7:].strip() if auth.lower().startswith("bearer ") else "")
        or request.headers.get("x-webhook-token")
        or request.query_params.get("token")
    )
    if not supplied or not settings.WEBHOOK_TOKEN:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing webhook token")
    if not hmac.compare_digest(supplied, settings.WEBHOOK_TOKEN):
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Invalid webhook token")


async def _read_payload(request: Request) -> Any:
    content_type = request.headers.get("content-type", "")
    if "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
        form = await request.form()
        return dict(form)
    try:
        return await request.json()
    except ValueError:
        return None


async def _parse(request: Request, model: type[BaseModel]):
    raw = await _read_payload(request)
    if not isinstance(raw, dict):
        return None, _invalid({"body": ["Expected a JSON object or form body"]})
    try:
        return model.model_validate(raw), None
    except ValidationError as exc:
        return None, _invalid(_issues(exc))


def _mode() -> str:
    return "open" if settings.WEBHOOK_AUTH_DISABLED else "token"


# --------------------------------------------
# Endpoints
# --------------------------------------------


@app.post(INCOMING_ROUTE)
async def incoming_webhook(request: Request):
    _require_token(request)
    event, error = await _parse(request, InboundEvent)
    if error is not None:
        return error
    response = await _services(request).processor.process(event)
    return response.body()


@app.get(INCOMING_ROUTE)
async def incoming_ping():
    return {"ok": True, "route": INCOMING_ROUTE, "mode": _mode()}


@app.post(STATUS_ROUTE)
async def message_status_webhook(request: Request):
    _require_token(request)
    callback, error = await _parse(request, StatusCallback)
    if error is not None:
        return error
    response = await _services(request).processor.process_status(callback)
    return response.body()


@app.get(STATUS_ROUTE)
async def message_status_ping():
    return {"ok": True, "route": STATUS_ROUTE, "mode": _mode()}
