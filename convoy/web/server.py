"""HTTP + WebSocket server exposing per-user agent sessions to the browser.

Routes:
    GET  /health
    GET  /ws/agent                              WebSocket chat transport
    POST /api/agent-chat                        one request streamed as SSE
    GET  /api/agent-sessions                    paginated session metadata
    GET  /api/agent-sessions/by-sdk-id/{sdk_id}
    GET|PATCH|DELETE /api/agent-sessions/{id}
    GET  /api/skills/store
    GET  /api/skills/user
    POST /api/skills/user/{name}/enable
    POST /api/skills/user/{name}/disable

Users are identified by the ``X-Convoy-User`` header, which an upstream
auth proxy is trusted to set.
"""
from __future__ import annotations

import asyncio
import json
import logging
import signal
import time
import uuid
import weakref
from pathlib import Path
from typing import Any

from aiohttp import WSCloseCode, WSMsgType, web

from convoy.adapters import messages
from convoy.adapters.connection import QueueConnection
from convoy.engine.config import ServerConfig
from convoy.engine.errors import InvalidMessageError, SkillNotFoundError
from convoy.engine.registry import SessionRegistry
from convoy.engine.runtime import AgentRuntime, ClaudeAgentRuntime
from convoy.engine.session import AgentSession
from convoy.shared.services.metadata_recorder import MetadataRecorder
from convoy.shared.services.metadata_store import SessionMetadataStore
from convoy.shared.services.skills import SkillsManager

logger = logging.getLogger(__name__)

USER_HEADER = "X-Convoy-User"
MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 20


class ConvoyServer:
    """aiohttp application wiring transports to the session registry."""

    def __init__(
        self,
        config: ServerConfig | None = None,
        *,
        registry: SessionRegistry | None = None,
        runtime: AgentRuntime | None = None,
        metadata_store: SessionMetadataStore | None = None,
        skills: SkillsManager | None = None,
    ) -> None:
        self._config = config or ServerConfig()
        self._host = self._config.host
        self._port = self._config.port

        if metadata_store is None and self._config.metadata_db_path:
            metadata_store = SessionMetadataStore(
                Path(self._config.metadata_db_path).expanduser()
            )
        self._metadata_store = metadata_store

        if registry is None:
            runtime = runtime or ClaudeAgentRuntime(
                self._config.model,
                permission_mode=self._config.permission_mode,
                api_key_env=self._config.api_key_env,
                base_url=self._config.base_url,
                cli_path=self._config.cli_path,
            )
            registry = SessionRegistry(
                self._config.sessions_root_path,
                runtime,
                idle_threshold=self._config.idle_threshold_seconds,
                sweep_interval=self._config.sweep_interval_seconds,
                event_callback=(
                    MetadataRecorder(metadata_store) if metadata_store is not None else None
                ),
            )
        self._registry = registry
        self._skills = skills or SkillsManager(
            self._config.skills_store_dir, self._registry.sessions_root,
        )

        self._websockets: weakref.WeakSet[web.WebSocketResponse] = weakref.WeakSet()
        self._request_tasks: set[asyncio.Task] = set()
        self._started_at = time.time()
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._app.on_shutdown.append(self._on_shutdown)
        self._setup_routes()
        logger.info(
            "ConvoyServer init host=%s port=%s sessions_root=%s metadata=%s skills_store=%s",
            self._host, self._port, self._registry.sessions_root,
            self._config.metadata_db_path or "<disabled>", self._skills.store_dir,
        )

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-convoy-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except web.HTTPException:
            raise
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        # Chat transports
        r.add_get("/ws/agent", self._handle_websocket)
        r.add_post("/api/agent-chat", self._handle_agent_chat)
        # Session metadata
        r.add_get("/api/agent-sessions", self._handle_list_sessions)
        r.add_get("/api/agent-sessions/by-sdk-id/{sdk_id}", self._handle_get_session_by_sdk_id)
        r.add_get("/api/agent-sessions/{id}", self._handle_get_session)
        r.add_patch("/api/agent-sessions/{id}", self._handle_update_session)
        r.add_delete("/api/agent-sessions/{id}", self._handle_delete_session)
        # Skills
        r.add_get("/api/skills/store", self._handle_list_store_skills)
        r.add_get("/api/skills/user", self._handle_list_user_skills)
        r.add_post("/api/skills/user/{name}/enable", self._handle_enable_skill)
        r.add_post("/api/skills/user/{name}/disable", self._handle_disable_skill)

    # ── Helpers ──

    def _require_user(self, request: web.Request) -> tuple[str | None, web.Response | None]:
        user_id = (request.headers.get(USER_HEADER) or "").strip()
        if not user_id:
            return None, web.json_response({"error": "Unauthorized"}, status=401)
        return user_id, None

    def _require_store(self) -> tuple[SessionMetadataStore | None, web.Response | None]:
        if self._metadata_store is None:
            return None, web.json_response(
                {"error": "Session metadata store is not configured"}, status=503,
            )
        return self._metadata_store, None

    def _track(self, task: asyncio.Task) -> asyncio.Task:
        self._request_tasks.add(task)
        task.add_done_callback(self._request_tasks.discard)
        return task

    async def _read_json(self, request: web.Request) -> tuple[dict[str, Any] | None, web.Response | None]:
        try:
            body = await request.json() if request.can_read_body else {}
        except (json.JSONDecodeError, ValueError):
            return None, web.json_response({"error": "Invalid JSON body"}, status=400)
        if not isinstance(body, dict):
            return None, web.json_response({"error": "JSON body must be an object"}, status=400)
        return body, None

    # ── Health ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "uptime_seconds": round(time.time() - self._started_at, 1),
            "sessions": self._registry.stats(),
            "idle_threshold_seconds": self._registry.idle_threshold,
        })

    # ── WebSocket transport ──

    async def _handle_websocket(self, request: web.Request) -> web.StreamResponse:
        user_id, error = self._require_user(request)
        if error:
            return error

        ws = web.WebSocketResponse(heartbeat=self._config.ws_heartbeat_seconds or None)
        await ws.prepare(request)
        self._websockets.add(ws)

        connection = QueueConnection(user_id, transport="ws")
        session = self._registry.get_or_create(user_id)
        self._registry.attach_connection(connection, session)
        writer = asyncio.create_task(self._drain_to_websocket(connection, ws))
        logger.info(
            "WebSocket %s connected user=%s req=%s",
            connection.connection_id, user_id, request.get("req_id", "unknown"),
        )

        try:
            async for frame in ws:
                if frame.type == WSMsgType.TEXT:
                    self._dispatch_ws_frame(connection, session, frame.data)
                elif frame.type == WSMsgType.ERROR:
                    logger.warning(
                        "WebSocket %s error: %s", connection.connection_id, ws.exception(),
                    )
                    break
        finally:
            connection.close()
            self._registry.detach_connection(connection)
            writer.cancel()
            await asyncio.gather(writer, return_exceptions=True)
            logger.info(
                "WebSocket %s disconnected user=%s (session busy=%s)",
                connection.connection_id, user_id, session.busy,
            )
        return ws

    def _dispatch_ws_frame(
        self,
        connection: QueueConnection,
        session: AgentSession,
        raw: str,
    ) -> None:
        try:
            inbound = messages.parse_inbound(raw)
        except InvalidMessageError as exc:
            connection.send(messages.encode(
                messages.error_message(messages.INVALID_MESSAGE, str(exc), retriable=False)
            ))
            return

        if isinstance(inbound, messages.ChatRequest):
            continuation = inbound.session_id or connection.resume_session_id
            # Run concurrently so abort frames are read while the agent works.
            self._track(asyncio.create_task(session.submit(inbound.content, continuation)))
        elif isinstance(inbound, messages.ResumeRequest):
            connection.resume_session_id = inbound.session_id
            connection.send(messages.encode(messages.session_init(inbound.session_id)))
        elif isinstance(inbound, messages.AbortRequest):
            session.interrupt()
        elif isinstance(inbound, messages.PingRequest):
            connection.send(messages.encode(messages.pong_message()))

    async def _drain_to_websocket(
        self,
        connection: QueueConnection,
        ws: web.WebSocketResponse,
    ) -> None:
        while not ws.closed:
            data = await connection.receive()
            if data is None:
                continue
            try:
                await ws.send_str(data.decode("utf-8"))
            except ConnectionResetError:
                break

    # ── SSE transport ──

    async def _handle_agent_chat(self, request: web.Request) -> web.StreamResponse:
        user_id, error = self._require_user(request)
        if error:
            return error
        body, error = await self._read_json(request)
        if error:
            return error
        prompt = body.get("prompt")
        if not isinstance(prompt, str) or not prompt.strip():
            return web.json_response({"error": "prompt is required"}, status=400)
        continuation = body.get("sessionId")
        if continuation is not None and not isinstance(continuation, str):
            return web.json_response({"error": "sessionId must be a string"}, status=400)

        session = self._registry.get_or_create(user_id)
        if session.busy:
            logger.info("SSE chat rejected, session busy user=%s", user_id)
            return web.json_response(
                messages.error_message(
                    messages.BUSY,
                    "Session is busy processing another request",
                    retriable=True,
                ),
                status=409,
            )

        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            },
        )
        await response.prepare(request)

        connection = QueueConnection(user_id, transport="sse")
        self._registry.attach_connection(connection, session)
        submit_task = self._track(
            asyncio.create_task(session.submit(prompt, continuation or None))
        )
        logger.info(
            "SSE chat started user=%s conn=%s req=%s",
            user_id, connection.connection_id, request.get("req_id", "unknown"),
        )

        loop = asyncio.get_running_loop()
        heartbeat = self._config.sse_heartbeat_seconds
        idle_timeout = self._config.sse_idle_timeout_seconds
        last_event_at = loop.time()
        timed_out = False
        # A busy rejection is broadcast to every connection of the session,
        # so it only ends this stream if this stream's own submit was refused.
        held_busy: bytes | None = None
        try:
            while True:
                if submit_task.done() and connection.pending() == 0:
                    if held_busy is not None:
                        await response.write(self._sse_frame(held_busy))
                    break
                data = await connection.receive(timeout=heartbeat)
                if data is None:
                    if idle_timeout > 0 and loop.time() - last_event_at >= idle_timeout:
                        timed_out = True
                        await response.write(self._sse_frame(messages.encode(
                            messages.error_message(
                                messages.TIMEOUT, "Stream idle timeout", retriable=True,
                            )
                        )))
                        break
                    await response.write(b": ping\n\n")
                    continue
                payload = json.loads(data)
                if payload.get("type") == "error" and payload.get("code") == messages.BUSY:
                    held_busy = data
                    continue
                last_event_at = loop.time()
                await response.write(self._sse_frame(data))
                if messages.is_terminal(payload):
                    break
        except ConnectionResetError:
            logger.info("SSE client went away user=%s conn=%s", user_id, connection.connection_id)
        finally:
            connection.close()
            self._registry.detach_connection(connection)
            if timed_out:
                logger.warning("SSE chat idle timeout user=%s; interrupting", user_id)
                session.interrupt("timeout")
        return response

    @staticmethod
    def _sse_frame(data: bytes) -> bytes:
        return b"data: " + data + b"\n\n"

    # ── Session metadata ──

    async def _handle_list_sessions(self, request: web.Request) -> web.Response:
        user_id, error = self._require_user(request)
        if error:
            return error
        store, error = self._require_store()
        if error:
            return error
        try:
            page = int(request.query.get("page", "1"))
            limit = int(request.query.get("limit", str(DEFAULT_PAGE_SIZE)))
        except ValueError:
            return web.json_response({"error": "page and limit must be integers"}, status=400)
        page = max(1, page)
        limit = max(1, min(MAX_PAGE_SIZE, limit))

        records = await asyncio.to_thread(store.list_for_user, user_id, page=page, limit=limit)
        total = await asyncio.to_thread(store.count_for_user, user_id)
        return web.json_response({
            "sessions": [record.to_dict() for record in records],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "totalPages": (total + limit - 1) // limit,
            },
        })

    async def _handle_get_session(self, request: web.Request) -> web.Response:
        user_id, error = self._require_user(request)
        if error:
            return error
        store, error = self._require_store()
        if error:
            return error
        record_id = request.match_info["id"]
        record = await asyncio.to_thread(store.get, user_id, record_id)
        if record is None:
            return web.json_response({"error": f"Session {record_id} not found"}, status=404)
        return web.json_response({"session": record.to_dict()})

    async def _handle_get_session_by_sdk_id(self, request: web.Request) -> web.Response:
        user_id, error = self._require_user(request)
        if error:
            return error
        store, error = self._require_store()
        if error:
            return error
        sdk_id = request.match_info["sdk_id"]
        record = await asyncio.to_thread(store.get_by_sdk_id, user_id, sdk_id)
        if record is None:
            return web.json_response({"error": f"Session {sdk_id} not found"}, status=404)
        return web.json_response({"session": record.to_dict()})

    async def _handle_update_session(self, request: web.Request) -> web.Response:
        user_id, error = self._require_user(request)
        if error:
            return error
        store, error = self._require_store()
        if error:
            return error
        body, error = await self._read_json(request)
        if error:
            return error
        title = body.get("title")
        favorite = body.get("favorite")
        if title is not None and (not isinstance(title, str) or not title.strip()):
            return web.json_response({"error": "title must be a non-empty string"}, status=400)
        if favorite is not None and not isinstance(favorite, bool):
            return web.json_response({"error": "favorite must be a boolean"}, status=400)
        if title is None and favorite is None:
            return web.json_response({"error": "Nothing to update"}, status=400)

        record_id = request.match_info["id"]
        record = await asyncio.to_thread(
            store.update, user_id, record_id,
            title=title.strip() if title else None, favorite=favorite,
        )
        if record is None:
            return web.json_response({"error": f"Session {record_id} not found"}, status=404)
        return web.json_response({"session": record.to_dict()})

    async def _handle_delete_session(self, request: web.Request) -> web.Response:
        user_id, error = self._require_user(request)
        if error:
            return error
        store, error = self._require_store()
        if error:
            return error
        record_id = request.match_info["id"]
        record = await asyncio.to_thread(store.delete, user_id, record_id)
        if record is None:
            return web.json_response({"error": f"Session {record_id} not found"}, status=404)
        return web.json_response({"status": "deleted", "id": record_id})

    # ── Skills ──

    async def _handle_list_store_skills(self, request: web.Request) -> web.Response:
        _, error = self._require_user(request)
        if error:
            return error
        skills = await asyncio.to_thread(self._skills.list_store)
        return web.json_response({"skills": [s.to_dict() for s in skills]})

    async def _handle_list_user_skills(self, request: web.Request) -> web.Response:
        user_id, error = self._require_user(request)
        if error:
            return error
        skills = await asyncio.to_thread(self._skills.enabled_for_user, user_id)
        return web.json_response({"skills": [s.to_dict() for s in skills]})

    async def _handle_enable_skill(self, request: web.Request) -> web.Response:
        user_id, error = self._require_user(request)
        if error:
            return error
        name = request.match_info["name"]
        try:
            skill = await asyncio.to_thread(self._skills.enable, user_id, name)
        except SkillNotFoundError as exc:
            return web.json_response({"error": str(exc)}, status=404)
        return web.json_response({"status": "enabled", "skill": skill.to_dict()})

    async def _handle_disable_skill(self, request: web.Request) -> web.Response:
        user_id, error = self._require_user(request)
        if error:
            return error
        name = request.match_info["name"]
        removed = await asyncio.to_thread(self._skills.disable, user_id, name)
        if not removed:
            return web.json_response({"error": f"Skill {name} is not enabled"}, status=404)
        return web.json_response({"status": "disabled", "name": name})

    # ── Lifecycle ──

    async def _on_shutdown(self, app: web.Application) -> None:
        for ws in list(self._websockets):
            await ws.close(code=WSCloseCode.GOING_AWAY, message=b"Server shutdown")
        self._registry.shutdown()
        for task in list(self._request_tasks):
            task.cancel()
        if self._request_tasks:
            await asyncio.gather(*self._request_tasks, return_exceptions=True)

    async def start(self) -> None:
        """Start the server and run until cancelled."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()
        logger.info("Convoy server listening on %s:%d", self._host, self._port)

        self._registry.start()
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except (NotImplementedError, RuntimeError):
                # Unsupported on Windows loops and outside the main thread.
                pass
        try:
            await stop.wait()
            logger.info("Termination signal received")
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await self._registry.stop()
            # on_shutdown interrupts every session before sockets close.
            await runner.cleanup()
            logger.info("Convoy server stopped")
