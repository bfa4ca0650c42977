"""Flask application factory for the tiered agents web host."""

import asyncio
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from flask import Flask, jsonify
from flask_cors import CORS

from agent.agent_context import AgentContext
from agent.config import AgentConfig
from agent.logs import build_logger
from agent.response import ApprovalRequest, ApprovalResponse, ChunkType
from security.rate_limit import RateLimiter


APPROVAL_TIMEOUT_SECONDS = 300.0


def create_app(config: AgentConfig, backend_factory: Callable | None = None) -> Flask:
    """Create and configure the Flask application.

    ``backend_factory`` (config -> dict of backends) replaces the adapters
    built from configuration; tests use it to run sessions against fakes.
    """
    app = Flask(__name__)
    CORS(app)

    # Shared state
    app.config["agent_config"] = config
    app.config["sessions"] = {}  # session_id -> SessionState
    app.config["backend_factory"] = backend_factory
    app.config["rate_limiter"] = RateLimiter(config.rate_limit.per_minute)
    app.config["web_logger"] = build_logger("web", config.log_dir, app, config.log_level)

    # Register blueprints
    from web.routes.chat import chat_bp
    from web.routes.approvals import approvals_bp
    from web.routes.metrics import metrics_bp

    app.register_blueprint(chat_bp, url_prefix="/api")
    app.register_blueprint(approvals_bp, url_prefix="/api")
    app.register_blueprint(metrics_bp, url_prefix="/api")

    @app.route("/")
    def index():
        return jsonify({
            "name": "tiered-agents",
            "providers": config.provider_priority,
            "approval_mode": config.tool_approval.mode,
            "tiering": config.tiering.enabled,
        })

    return app


@dataclass
class PendingApproval:
    request: ApprovalRequest
    event: threading.Event = field(default_factory=threading.Event)
    response: ApprovalResponse | None = None


class SessionState:
    """Holds the state for one chat session."""

    def __init__(
        self,
        config: AgentConfig,
        session_id: str | None = None,
        backends: dict | None = None,
        approval_timeout: float = APPROVAL_TIMEOUT_SECONDS,
    ):
        self.config = config
        self.context = AgentContext(
            config,
            session_id=session_id,
            backends=backends,
            approval_callback=self._approval_callback,
        )
        self.id = self.context.id
        self.stream_queue: queue.Queue = queue.Queue()
        self.is_running = False
        self.final_response: str | None = None
        self.approval_timeout = approval_timeout
        self._pending: dict[str, PendingApproval] = {}
        self._pending_lock = threading.Lock()
        self._run_lock = threading.Lock()
        self._closed = False
        self._initialized = False

    # ── Approval channel ─────────────────────────────────────────────

    def _approval_callback(self, request: ApprovalRequest) -> ApprovalResponse:
        """Runs on a worker thread; blocks until the client answers."""
        pending = PendingApproval(request=request)
        with self._pending_lock:
            self._pending[request.id] = pending
        self.stream_queue.put({"type": "approval_required", "request": request.to_dict()})

        answered = pending.event.wait(self.approval_timeout)
        with self._pending_lock:
            self._pending.pop(request.id, None)
        if not answered or pending.response is None:
            return ApprovalResponse(approved=False, reason="Approval timed out", withdrawn=True)
        return pending.response

    def pending_approvals(self) -> list[dict]:
        with self._pending_lock:
            return [p.request.to_dict() for p in self._pending.values()]

    def respond(self, request_id: str, approved: bool, reason: str | None = None) -> bool:
        return self._resolve(request_id, ApprovalResponse(approved=approved, reason=reason))

    def withdraw(self, request_id: str) -> bool:
        return self._resolve(
            request_id,
            ApprovalResponse(approved=False, reason="Request withdrawn", withdrawn=True),
        )

    def _resolve(self, request_id: str, response: ApprovalResponse) -> bool:
        with self._pending_lock:
            pending = self._pending.get(request_id)
            if pending is None or pending.event.is_set():
                return False
            pending.response = response
            pending.event.set()
        return True

    # ── Turns ────────────────────────────────────────────────────────

    async def _run_turn(self, message: str) -> str:
        if not self._initialized:
            await self.context.initialize()
            self._initialized = True

        final = ""
        async for chunk in self.context.agent.run_stream(message):
            event = chunk.to_dict()
            if chunk.type == ChunkType.DONE:
                final = chunk.content
                event["router"] = self.context.router.stats()
            self.stream_queue.put(event)
        return final

    def send_message(self, message: str) -> threading.Thread | None:
        """Run one agent turn in a background thread.

        Returns None without starting anything when a turn is already running.
        """
        with self._run_lock:
            if self.is_running or self._closed:
                return None
            self.is_running = True
        self.final_response = None

        def run_in_thread():
            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)
            try:
                self.final_response = loop.run_until_complete(self._run_turn(message))
            except Exception as e:
                self.context.logger.error("Turn failed in session %s: %s", self.id, e)
                self.stream_queue.put({
                    "type": "error",
                    "content": str(e),
                })
            finally:
                self.context.touch()
                loop.close()
                with self._run_lock:
                    if self._closed:
                        self.context.close()
                    self.is_running = False

        thread = threading.Thread(target=run_in_thread, daemon=True)
        thread.start()
        return thread

    def close(self) -> None:
        """Withdraw anything awaiting approval and release the session's loggers.

        A turn still winding down releases them itself when it finishes.
        """
        for pending in self.pending_approvals():
            self.withdraw(pending["id"])
        with self._run_lock:
            self._closed = True
            if self.is_running:
                return
        self.context.close()

    def wait_idle(self, timeout: float = 10.0) -> bool:
        deadline = time.monotonic() + timeout
        while self.is_running and time.monotonic() < deadline:
            time.sleep(0.01)
        return not self.is_running
