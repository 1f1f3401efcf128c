"""Operator HTTP API (aiohttp.web).

Thin JSON surface over the core actions for the admin panel. Slow work
(compositions) never runs inside a request: manual task runs return 202
with a run id to poll, and ingestion only schedules a monitor check.

Routes:
    GET    /api/status                    Unpushed count, trigger state, reconciliations
    DELETE /api/reconciliations           Acknowledge recorded reconciliations
    GET    /api/reading                   Reading window (category, pushed, limit, offset)
    POST   /api/reading                   Append a news item (upstream producer)
    DELETE /api/reading/{entry_id}        Remove one entry
    POST   /api/reading/clear-pushed      Remove every pushed entry
    GET    /api/auto-push                 Auto-push configuration
    PUT    /api/auto-push                 Save auto-push configuration
    GET    /api/channels                  List channels (passwords masked)
    POST   /api/channels                  Create or update a channel
    DELETE /api/channels/{id}             Delete a channel
    POST   /api/channels/{id}/test        Send a test notification
    GET    /api/templates                 List templates
    POST   /api/templates                 Create or update a template
    DELETE /api/templates/{id}            Delete a template
    POST   /api/templates/preview         Compile and render for the live editor
    GET    /api/tasks                     List tasks
    POST   /api/tasks                     Create or update a task
    DELETE /api/tasks/{id}                Delete a task
    POST   /api/tasks/{id}/run            Run now (202 + run)
    GET    /api/runs/{run_id}             Poll a run

Error Mapping:
    400: ConfigError, CompileError, RenderError, invalid JSON
    404: unknown id
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator

from aiohttp import web
from pydantic import ValidationError

import catalog
from catalog import ConfigError
from composer import BatchComposer
from config import Config
from database import Database
from models.news import NewsItem
from monitor import ThresholdMonitor
from notifications import DeliveryError, Dispatcher
from rendering import BUILTIN_TEMPLATES, CompileError, RenderError, preview
from scheduler import ScheduleRunner

logger = logging.getLogger(__name__)

PASSWORD_MASK = "********"


@dataclass
class Services:
    """Long-lived objects shared by the API and the background triggers."""

    db: Database
    dispatcher: Dispatcher
    composer: BatchComposer
    monitor: ThresholdMonitor
    runner: ScheduleRunner
    monitor_enabled: bool = True
    scheduler_enabled: bool = True

    @classmethod
    def from_config(cls, config: Config, db: Database | None = None) -> "Services":
        db = db or Database(config.db_path)
        dispatcher = Dispatcher(timeout=config.dispatch_timeout_seconds)
        composer = BatchComposer(
            db, dispatcher, max_items=config.batch_max_items, tz=config.tzinfo
        )
        return cls(
            db=db,
            dispatcher=dispatcher,
            composer=composer,
            monitor=ThresholdMonitor(db, composer, interval=config.monitor_interval_seconds),
            runner=ScheduleRunner(db, composer, tz=config.tzinfo),
            monitor_enabled=config.monitor_enabled,
            scheduler_enabled=config.scheduler_enabled,
        )


SERVICES = web.AppKey("services", Services)

routes = web.RouteTableDef()


def _services(request: web.Request) -> Services:
    return request.app[SERVICES]


def _http_error(exc_class: type[web.HTTPException], message: str) -> web.HTTPException:
    return exc_class(text=json.dumps({"error": message}), content_type="application/json")


def _not_found(what: str, ident: Any) -> web.HTTPException:
    return _http_error(web.HTTPNotFound, f"{what} not found: {ident}")


async def _json_body(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError as e:
        raise _http_error(web.HTTPBadRequest, f"invalid JSON body: {e}") from e
    if not isinstance(body, dict):
        raise _http_error(web.HTTPBadRequest, "JSON body must be an object")
    return body


def _int_param(request: web.Request, name: str, default: int) -> int:
    raw = request.query.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"query parameter {name} must be an integer") from e


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Map domain errors to JSON responses."""
    try:
        return await handler(request)
    except CompileError as e:
        return web.json_response(
            {"error": str(e), "kind": "compile", "line": e.lineno, "part": e.part}, status=400
        )
    except RenderError as e:
        return web.json_response({"error": str(e), "kind": "render"}, status=400)
    except ConfigError as e:
        return web.json_response({"error": str(e), "kind": "config"}, status=400)
    except ValidationError as e:
        return web.json_response({"error": str(e), "kind": "validation"}, status=400)


# --- Status --------------------------------------------------------------


@routes.get("/api/status")
async def get_status(request: web.Request) -> web.Response:
    s = _services(request)
    counts = s.db.window_counts()
    return web.json_response({
        "unpushed": counts["unpushed"],
        "window_total": counts["total"],
        "auto_push": s.db.load_auto_push().model_dump(mode="json"),
        "monitor": {
            "state": s.monitor.state.value,
            "suppressed": s.monitor.suppressed,
            "last_error": s.monitor.last_error,
        },
        "composer": {
            "busy": s.composer.busy,
            "batches_sent": s.composer.batches_sent,
        },
        "reconciliations": [r.to_dict() for r in s.composer.reconciliations],
    })


@routes.delete("/api/reconciliations")
async def acknowledge_reconciliations(request: web.Request) -> web.Response:
    count = _services(request).composer.acknowledge_reconciliations()
    return web.json_response({"acknowledged": count})


# --- Reading window -------------------------------------------------------


@routes.get("/api/reading")
async def list_reading(request: web.Request) -> web.Response:
    s = _services(request)
    pushed_param = request.query.get("pushed")
    pushed = None
    if pushed_param in ("true", "1"):
        pushed = True
    elif pushed_param in ("false", "0"):
        pushed = False

    entries = s.db.list_window(
        category=request.query.get("category") or None,
        pushed=pushed,
        limit=_int_param(request, "limit", 50),
        offset=_int_param(request, "offset", 0),
    )
    return web.json_response({
        "entries": [e.model_dump(mode="json") for e in entries],
        **s.db.window_counts(),
    })


@routes.post("/api/reading")
async def append_reading(request: web.Request) -> web.Response:
    s = _services(request)
    item = NewsItem.model_validate(await _json_body(request))
    entry_id = s.db.append_to_window(item)
    logger.info("Item ingested | item=%s entry=%d category=%s", item.id, entry_id, item.category)
    if s.monitor_enabled:
        s.monitor.poke()
    return web.json_response({"entry_id": entry_id, "item_id": item.id}, status=201)


@routes.delete("/api/reading/{entry_id:\\d+}")
async def remove_reading(request: web.Request) -> web.Response:
    entry_id = int(request.match_info["entry_id"])
    if not _services(request).db.remove(entry_id):
        raise _not_found("entry", entry_id)
    return web.json_response({"removed": entry_id})


@routes.post("/api/reading/clear-pushed")
async def clear_pushed(request: web.Request) -> web.Response:
    removed = _services(request).db.clear_pushed()
    return web.json_response({"removed": removed})


# --- Auto-push ------------------------------------------------------------


@routes.get("/api/auto-push")
async def get_auto_push(request: web.Request) -> web.Response:
    s = _services(request)
    data = s.db.load_auto_push().model_dump(mode="json")
    data["pending"] = s.db.count_unpushed()
    return web.json_response(data)


@routes.put("/api/auto-push")
async def put_auto_push(request: web.Request) -> web.Response:
    s = _services(request)
    config = catalog.save_auto_push(s.db, await _json_body(request))
    if s.monitor_enabled:
        s.monitor.poke()
    return web.json_response(config.model_dump(mode="json"))


# --- Channels -------------------------------------------------------------


def _channel_json(channel) -> dict[str, Any]:
    data = channel.model_dump(mode="json")
    if data["type"] == "email" and data["config"].get("password"):
        data["config"]["password"] = PASSWORD_MASK
    return data


@routes.get("/api/channels")
async def list_channels(request: web.Request) -> web.Response:
    channels = _services(request).db.list_channels()
    return web.json_response([_channel_json(c) for c in channels])


@routes.post("/api/channels")
async def save_channel(request: web.Request) -> web.Response:
    s = _services(request)
    body = await _json_body(request)

    # Keep the stored password when the panel echoes back the mask
    config = body.get("config")
    if body.get("id") and isinstance(config, dict) and config.get("password") == PASSWORD_MASK:
        existing = s.db.get_channel(body["id"])
        if existing is not None and existing.type == "email":
            config["password"] = existing.config.password

    channel = catalog.save_channel(s.db, body)
    return web.json_response(_channel_json(channel), status=201)


@routes.delete("/api/channels/{channel_id}")
async def delete_channel(request: web.Request) -> web.Response:
    channel_id = request.match_info["channel_id"]
    if not catalog.delete_channel(_services(request).db, channel_id):
        raise _not_found("channel", channel_id)
    return web.json_response({"deleted": channel_id})


@routes.post("/api/channels/{channel_id}/test")
async def test_channel(request: web.Request) -> web.Response:
    s = _services(request)
    channel_id = request.match_info["channel_id"]
    if s.db.get_channel(channel_id) is None:
        raise _not_found("channel", channel_id)
    channel = catalog.resolve_channel(s.db, channel_id)
    try:
        await s.dispatcher.test(channel)
    except DeliveryError as e:
        logger.warning("Channel test failed | channel=%s error=%s", channel_id, e)
        return web.json_response({"ok": False, "error": str(e)})
    return web.json_response({"ok": True})


# --- Templates ------------------------------------------------------------


@routes.get("/api/templates")
async def list_templates(request: web.Request) -> web.Response:
    templates = _services(request).db.list_templates()
    return web.json_response({
        "templates": [t.model_dump(mode="json") for t in templates],
        "builtin": sorted(BUILTIN_TEMPLATES),
    })


@routes.post("/api/templates")
async def save_template(request: web.Request) -> web.Response:
    template = catalog.save_template(_services(request).db, await _json_body(request))
    return web.json_response(template.model_dump(mode="json"), status=201)


@routes.post("/api/templates/preview")
async def preview_template(request: web.Request) -> web.Response:
    s = _services(request)
    body = await _json_body(request)
    content = body.get("content")
    if not content and body.get("builtin"):
        content = BUILTIN_TEMPLATES.get(body["builtin"])
    if not content:
        raise ConfigError("content is required")

    entries = s.db.list_unpushed(limit=20)
    rendered = preview(content, body.get("subject"), entries, now=datetime.now(s.composer.tz))
    return web.json_response({"ok": True, **rendered.to_dict()})


@routes.delete("/api/templates/{template_id}")
async def delete_template(request: web.Request) -> web.Response:
    template_id = request.match_info["template_id"]
    if not catalog.delete_template(_services(request).db, template_id):
        raise _not_found("template", template_id)
    return web.json_response({"deleted": template_id})


# --- Tasks ----------------------------------------------------------------


@routes.get("/api/tasks")
async def list_tasks(request: web.Request) -> web.Response:
    tasks = _services(request).db.list_tasks()
    return web.json_response([t.model_dump(mode="json") for t in tasks])


@routes.post("/api/tasks")
async def save_task(request: web.Request) -> web.Response:
    task = catalog.save_task(_services(request).db, await _json_body(request))
    return web.json_response(task.model_dump(mode="json"), status=201)


@routes.delete("/api/tasks/{task_id}")
async def delete_task(request: web.Request) -> web.Response:
    task_id = request.match_info["task_id"]
    if not _services(request).db.delete_task(task_id):
        raise _not_found("task", task_id)
    return web.json_response({"deleted": task_id})


@routes.post("/api/tasks/{task_id}/run")
async def run_task(request: web.Request) -> web.Response:
    s = _services(request)
    task_id = request.match_info["task_id"]
    if s.db.get_task(task_id) is None:
        raise _not_found("task", task_id)
    run = s.runner.run_now(task_id)
    return web.json_response(run.to_dict(), status=202)


@routes.get("/api/runs/{run_id}")
async def get_run(request: web.Request) -> web.Response:
    run_id = request.match_info["run_id"]
    run = _services(request).runner.get_run(run_id)
    if run is None:
        raise _not_found("run", run_id)
    return web.json_response(run.to_dict())


# --- App factory ----------------------------------------------------------


async def _background_triggers(app: web.Application) -> AsyncIterator[None]:
    s = app[SERVICES]
    tasks = []
    if s.monitor_enabled:
        tasks.append(asyncio.create_task(s.monitor.run(), name="threshold-monitor"))
    if s.scheduler_enabled:
        tasks.append(asyncio.create_task(s.runner.run(), name="schedule-runner"))

    yield

    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


def create_app(services: Services, background: bool = True) -> web.Application:
    """Build the operator API application.

    Args:
        services: Shared store, dispatcher, composer and triggers
        background: Start the monitor and scheduler loops with the app
    """
    app = web.Application(middlewares=[error_middleware])
    app[SERVICES] = services
    app.add_routes(routes)
    if background:
        app.cleanup_ctx.append(_background_triggers)
    return app
