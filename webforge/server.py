"""
webforge service: WebSocket :7825

Requests are JSON objects {"type", "id", ...}. Every request gets exactly one
reply, {"type": "result", "id", "ok", "data"} or {"type": "error", "id",
"message", "detail"}. Logs, streamed tokens, written files and preview status
changes are broadcast to all connected clients as they happen.
"""
import asyncio, json, logging

import websockets

from . import config
from .errors import WebforgeError, describe_error
from .llm import ensure_model, unload_model
from .pipeline import Pipeline

log = logging.getLogger("server")


class Hub:
    """Connected clients plus a thread-safe emit()."""

    def __init__(self):
        self.clients = set()
        self.loop: asyncio.AbstractEventLoop | None = None

    def emit(self, msg: dict):
        if self.loop is None or not self.clients:
            return
        data = json.dumps(msg, ensure_ascii=False, default=str)

        async def _s():
            dead = set()
            for ws in list(self.clients):
                try:
                    await ws.send(data)
                except websockets.exceptions.ConnectionClosed:
                    dead.add(ws)
            self.clients.difference_update(dead)

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self.loop:
            self.loop.create_task(_s())
        else:
            asyncio.run_coroutine_threadsafe(_s(), self.loop)


class _LogForwarder(logging.Handler):
    """Mirrors log records to the UI log pane."""

    def __init__(self, hub: Hub):
        super().__init__(level=logging.INFO)
        self.hub = hub

    def emit(self, record):
        try:
            self.hub.emit({"type": "log", "level": record.levelname, "text": record.getMessage()})
        except Exception:
            self.handleError(record)


# ── Request dispatch ──────────────────────────────────────────────────────────

def _require(msg: dict, key: str) -> str:
    v = msg.get(key)
    if not isinstance(v, str) or not v.strip():
        raise WebforgeError(f"Missing '{key}' in {msg.get('type')} request")
    return v.strip()


async def dispatch(pipeline: Pipeline, msg: dict):
    """Run one request and return its data payload. Raises WebforgeError on bad input."""
    kind = msg.get("type")
    rid = msg.get("id")

    if kind == "run":
        res = await pipeline.run_prompt_and_apply(
            _require(msg, "project"), _require(msg, "prompt"),
            require_changes=msg.get("require_changes"), request_id=rid)
        return res.to_dict()
    if kind == "fix":
        res = await pipeline.auto_fix(
            _require(msg, "project"), runtime_error=msg.get("runtime_error"),
            route=msg.get("route") or "/", request_id=rid)
        return res.to_dict()
    if kind == "cancel":
        return {"cancelled": pipeline.cancel(_require(msg, "target"))}
    if kind == "preview_start":
        port = msg.get("port")
        if port is not None:
            try:
                port = int(port)
            except (TypeError, ValueError):
                raise WebforgeError(f"Invalid port: {port!r}")
        st = await pipeline.start_preview(
            _require(msg, "project"), port=port,
            auto_install_deps=msg.get("auto_install_deps", True))
        return st.to_dict()
    if kind == "preview_stop":
        return {"stopped": await pipeline.stop_preview(_require(msg, "project"))}
    if kind == "preview_status":
        return pipeline.preview_status(_require(msg, "project")).to_dict()
    if kind == "preview_logs":
        return {"lines": pipeline.preview_logs(_require(msg, "project"), int(msg.get("tail") or 250))}
    raise WebforgeError(f"Unknown request type: {kind!r}")


async def handle_message(pipeline: Pipeline, raw) -> dict:
    try:
        msg = json.loads(raw)
    except (TypeError, ValueError):
        return {"type": "error", "id": None, "message": "Invalid JSON", "detail": None}
    if not isinstance(msg, dict):
        return {"type": "error", "id": None, "message": "Request must be a JSON object", "detail": None}
    rid = msg.get("id")
    try:
        return {"type": "result", "id": rid, "ok": True, "data": await dispatch(pipeline, msg)}
    except WebforgeError as e:
        return {"type": "error", "id": rid, **describe_error(e)}
    except Exception as e:
        log.exception(f"request {msg.get('type')} failed")
        return {"type": "error", "id": rid, **describe_error(e)}


# ── WebSocket handler ─────────────────────────────────────────────────────────

def make_handler(hub: Hub, pipeline: Pipeline):
    tasks = set()

    async def ws_handler(websocket, path=None):
        hub.clients.add(websocket)
        log.info(f"WS connected ({len(hub.clients)})")

        async def reply(raw):
            out = await handle_message(pipeline, raw)
            try:
                await websocket.send(json.dumps(out, ensure_ascii=False, default=str))
            except websockets.exceptions.ConnectionClosed:
                pass

        try:
            await websocket.send(json.dumps({"type": "log", "level": "INFO", "text": "✅ webforge connected"}))
            async for raw in websocket:
                # long operations must not block cancel / status requests
                t = asyncio.create_task(reply(raw))
                tasks.add(t)
                t.add_done_callback(tasks.discard)
        except websockets.exceptions.ConnectionClosed:
            pass
        finally:
            hub.clients.discard(websocket)
            log.info(f"WS disconnected ({len(hub.clients)})")

    return ws_handler


# ── Main ──────────────────────────────────────────────────────────────────────

async def serve(host: str = None, port: int = None):
    host = host or config.WS_HOST
    port = port or config.WS_PORT
    hub = Hub()
    hub.loop = asyncio.get_running_loop()
    pipeline = Pipeline(emit=hub.emit)
    forwarder = _LogForwarder(hub)
    logging.getLogger().addHandler(forwarder)

    print(f"\n{'━'*46}")
    print(f"  ⚡ webforge starting...")
    print(f"  🔌 WebSocket   →  ws://{host}:{port}")
    print(f"  🧠 Provider    :  {config.PROVIDER}")
    print(f"  🌐 Preview     :  http://{config.PREVIEW_HOST}:{config.PREVIEW_PORT}+")
    print(f"{'━'*46}\n")
    if config.PROVIDER == "ollama":
        await asyncio.to_thread(ensure_model, config.OLLAMA_MODEL)
    try:
        async with websockets.serve(make_handler(hub, pipeline), host, port):
            await asyncio.Future()
    finally:
        log.info("🛑 Shutting down webforge...")
        logging.getLogger().removeHandler(forwarder)
        await pipeline.shutdown()
        if config.PROVIDER == "ollama":
            await asyncio.to_thread(unload_model, config.OLLAMA_MODEL)
