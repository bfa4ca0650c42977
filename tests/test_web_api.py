import json
import threading
import time
from pathlib import Path

from agent.config import AgentConfig, RateLimitConfig, SecurityConfig
from agent.response import ChunkType, StreamChunk, ToolCall, Usage
from web.app import SessionState, create_app


class FakeBackend:
    """Streams a fixed list of turns; the last one repeats."""

    backend_id = "anthropic"
    is_local = False
    model = "fake"

    def __init__(self, turns):
        self.turns = list(turns)

    async def is_available(self):
        return True

    def count_tokens(self, text):
        return len(text) // 4

    def context_window_size(self):
        return 100000

    async def stream(self, messages, system_prompt, tools=None, options=None):
        turn = self.turns.pop(0) if len(self.turns) > 1 else self.turns[0]
        for chunk in turn:
            yield chunk


def _text(content):
    return [
        StreamChunk(type=ChunkType.TEXT, content=content),
        StreamChunk(type=ChunkType.DONE, finish_reason="stop", usage=Usage(10, 10)),
    ]


def _write(path):
    call = ToolCall("c1", "write_file", {"path": path, "content": "hello"})
    return [
        StreamChunk(type=ChunkType.TOOL_CALL_START, tool_call=ToolCall("c1", "write_file")),
        StreamChunk(type=ChunkType.TOOL_CALL_END, tool_call=call),
        StreamChunk(type=ChunkType.DONE, finish_reason="tool_use", usage=Usage(10, 10)),
    ]


def _make_app(tmp_path: Path, turns, per_minute=30):
    config = AgentConfig(
        provider_priority=["anthropic"],
        rate_limit=RateLimitConfig(per_minute=per_minute),
        security=SecurityConfig(audit_log_path=str(tmp_path / "audit.jsonl")),
        data_dir=str(tmp_path / "data"),
        log_dir=str(tmp_path / "logs"),
    )
    app = create_app(config, backend_factory=lambda cfg: {"anthropic": FakeBackend(turns)})
    app.testing = True
    return app


def _events(client, session_id):
    resp = client.get(f"/api/chat/stream/{session_id}")
    assert resp.status_code == 200
    body = resp.get_data(as_text=True)
    return [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]


def _session(app, session_id):
    return app.config["sessions"][session_id]


def _wait_for_pending(client, session_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        pending = client.get(f"/api/approvals/{session_id}").get_json()["pending"]
        if pending:
            return pending
        time.sleep(0.02)
    raise AssertionError("no approval request arrived")


def test_send_and_stream(tmp_path):
    app = _make_app(tmp_path, [_text("4")])
    client = app.test_client()

    resp = client.post("/api/chat/send", json={"message": "What's 2+2?"})
    assert resp.status_code == 200
    session_id = resp.get_json()["session_id"]
    assert _session(app, session_id).wait_idle()

    events = _events(client, session_id)
    assert [e["type"] for e in events] == ["text", "done"]
    assert events[-1]["content"] == "4"
    assert events[-1]["router"]["cloud_requests"] == 1

    history = client.get(f"/api/chat/history/{session_id}").get_json()
    assert [m["role"] for m in history["history"]] == ["user", "assistant"]
    assert history["context"]["message_count"] == 2


def test_empty_message_rejected(tmp_path):
    client = _make_app(tmp_path, [_text("x")]).test_client()
    resp = client.post("/api/chat/send", json={"message": "   "})
    assert resp.status_code == 400


def test_rate_limit_returns_429(tmp_path):
    app = _make_app(tmp_path, [_text("ok")], per_minute=1)
    client = app.test_client()

    first = client.post("/api/chat/send", json={"message": "hi", "session_id": "fixed"})
    assert first.status_code == 200
    assert _session(app, "fixed").wait_idle()

    second = client.post("/api/chat/send", json={"message": "again", "session_id": "fixed"})
    assert second.status_code == 429
    assert second.get_json()["retry_after"] > 0
    assert int(second.headers["Retry-After"]) >= 1


def test_approval_round_trip(tmp_path):
    target = tmp_path / "out.txt"
    app = _make_app(tmp_path, [_write(str(target)), _text("Wrote it")])
    client = app.test_client()

    session_id = client.post("/api/chat/send", json={"message": "write a file"}).get_json()["session_id"]
    pending = _wait_for_pending(client, session_id)
    assert pending[0]["tool_name"] == "write_file"
    assert pending[0]["risk"] == "high"

    bad = client.post(f"/api/approvals/{session_id}/{pending[0]['id']}", json={"approved": "yes"})
    assert bad.status_code == 400

    resp = client.post(f"/api/approvals/{session_id}/{pending[0]['id']}", json={"approved": True})
    assert resp.get_json()["status"] == "approved"
    assert _session(app, session_id).wait_idle()

    assert target.read_text() == "hello"
    events = _events(client, session_id)
    types = [e["type"] for e in events]
    assert types[0] == "tool_call_start"
    assert "approval_required" in types
    result = next(e for e in events if e["type"] == "tool_result")
    assert result["tool_result"]["error"] is None
    assert events[-1]["content"] == "Wrote it"

    # answering twice is a 404
    again = client.post(f"/api/approvals/{session_id}/{pending[0]['id']}", json={"approved": True})
    assert again.status_code == 404


def test_denial_and_withdrawal(tmp_path):
    target = tmp_path / "out.txt"
    app = _make_app(tmp_path, [_write(str(target)), _text("ok"), _write(str(target)), _text("ok")])
    client = app.test_client()

    session_id = client.post("/api/chat/send", json={"message": "write"}).get_json()["session_id"]
    pending = _wait_for_pending(client, session_id)
    client.post(f"/api/approvals/{session_id}/{pending[0]['id']}", json={"approved": False, "reason": "no"})
    assert _session(app, session_id).wait_idle()
    result = next(e for e in _events(client, session_id) if e["type"] == "tool_result")
    assert result["tool_result"]["error"] == "denied"
    assert result["tool_result"]["reason"] == "no"
    assert not target.exists()

    client.post("/api/chat/send", json={"message": "write again", "session_id": session_id})
    pending = _wait_for_pending(client, session_id)
    resp = client.delete(f"/api/approvals/{session_id}/{pending[0]['id']}")
    assert resp.get_json()["status"] == "withdrawn"
    assert _session(app, session_id).wait_idle()
    result = next(e for e in _events(client, session_id) if e["type"] == "tool_result")
    assert result["tool_result"]["error"] == "withdrawn"


def test_delete_session_withdraws_pending(tmp_path):
    app = _make_app(tmp_path, [_write(str(tmp_path / "x.txt")), _text("ok")])
    client = app.test_client()

    session_id = client.post("/api/chat/send", json={"message": "write"}).get_json()["session_id"]
    _wait_for_pending(client, session_id)
    session = _session(app, session_id)

    resp = client.delete(f"/api/chat/session/{session_id}")
    assert resp.status_code == 200
    assert session.wait_idle()
    assert session.pending_approvals() == []
    assert client.get(f"/api/chat/history/{session_id}").status_code == 404
    assert client.delete(f"/api/chat/session/{session_id}").status_code == 404


def test_sessions_and_metrics(tmp_path):
    app = _make_app(tmp_path, [_text("hi")])
    client = app.test_client()

    session_id = client.post("/api/chat/send", json={"message": "hello"}).get_json()["session_id"]
    assert _session(app, session_id).wait_idle()

    sessions = client.get("/api/chat/sessions").get_json()["sessions"]
    assert sessions[0]["session_id"] == session_id
    assert sessions[0]["backend"] == "anthropic"
    assert sessions[0]["is_running"] is False

    metrics = client.get("/api/metrics").get_json()
    assert metrics["totals"]["total_requests"] == 1
    assert metrics["totals"]["cloud_requests"] == 1
    assert metrics["sessions"][0]["session_id"] == session_id
    assert "requests served locally" in metrics["sessions"][0]["savings"]


def test_index_and_unknown_session(tmp_path):
    client = _make_app(tmp_path, [_text("x")]).test_client()
    info = client.get("/").get_json()
    assert info["providers"] == ["anthropic"]
    assert client.get("/api/chat/stream/missing").status_code == 404
    assert client.get("/api/approvals/missing").status_code == 404


class GatedBackend(FakeBackend):
    """Holds its stream open until ``release`` is set."""

    def __init__(self, turns):
        super().__init__(turns)
        self.entered = threading.Event()
        self.release = threading.Event()

    async def stream(self, messages, system_prompt, tools=None, options=None):
        self.entered.set()
        self.release.wait(5)
        async for chunk in super().stream(messages, system_prompt, tools, options):
            yield chunk


def _gated_session(tmp_path):
    config = AgentConfig(
        provider_priority=["anthropic"],
        security=SecurityConfig(audit_log_path=str(tmp_path / "audit.jsonl")),
        data_dir=str(tmp_path / "data"),
        log_dir=str(tmp_path / "logs"),
    )
    backend = GatedBackend([_text("done")])
    return SessionState(config, backends={"anthropic": backend}), backend


def test_second_send_refused_while_turn_runs(tmp_path):
    session, backend = _gated_session(tmp_path)

    first = session.send_message("one")
    assert first is not None
    assert backend.entered.wait(5)

    assert session.send_message("two") is None

    backend.release.set()
    first.join(5)
    assert session.final_response == "done"
    assert session.is_running is False

    again = session.send_message("three")
    assert again is not None
    again.join(5)
    session.close()


def test_concurrent_sends_start_one_turn(tmp_path):
    session, backend = _gated_session(tmp_path)
    barrier = threading.Barrier(8)
    started = []

    def send():
        barrier.wait()
        thread = session.send_message("hi")
        if thread is not None:
            started.append(thread)

    senders = [threading.Thread(target=send) for _ in range(8)]
    for sender in senders:
        sender.start()
    for sender in senders:
        sender.join(5)

    assert len(started) == 1
    backend.release.set()
    started[0].join(5)
    session.close()


def test_send_route_returns_409_while_busy(tmp_path):
    backend = GatedBackend([_text("done")])
    config = AgentConfig(
        provider_priority=["anthropic"],
        security=SecurityConfig(audit_log_path=str(tmp_path / "audit.jsonl")),
        data_dir=str(tmp_path / "data"),
        log_dir=str(tmp_path / "logs"),
    )
    app = create_app(config, backend_factory=lambda cfg: {"anthropic": backend})
    client = app.test_client()

    session_id = client.post("/api/chat/send", json={"message": "one"}).get_json()["session_id"]
    assert backend.entered.wait(5)
    busy = client.post("/api/chat/send", json={"message": "two", "session_id": session_id})
    assert busy.status_code == 409

    backend.release.set()
    assert _session(app, session_id).wait_idle()


def test_deleted_session_releases_loggers(tmp_path):
    app = _make_app(tmp_path, [_text("hi")])
    client = app.test_client()

    session_id = client.post("/api/chat/send", json={"message": "hello"}).get_json()["session_id"]
    session = _session(app, session_id)
    assert session.wait_idle()
    loggers = list(session.context._loggers)
    assert loggers and all(logger.handlers for logger in loggers)

    client.delete(f"/api/chat/session/{session_id}")
    assert all(not logger.handlers for logger in loggers)
    assert session.send_message("late") is None
