"""Chat API routes - send messages, stream responses via SSE."""

import json
import queue

from flask import Blueprint, Response, current_app, jsonify, request

from web.app import SessionState

chat_bp = Blueprint("chat", __name__)


@chat_bp.route("/chat/send", methods=["POST"])
def send_message():
    """Send a user message and start an agent turn."""
    data = request.get_json(silent=True) or {}
    message = (data.get("message") or "").strip()
    session_id = data.get("session_id")

    if not message:
        return jsonify({"error": "No message provided"}), 400

    limiter = current_app.config["rate_limiter"]
    identity = session_id or request.remote_addr or "anonymous"
    if not limiter.check(identity):
        retry_after = limiter.retry_after(identity)
        current_app.config["web_logger"].warning("Rate limit exceeded for %s", identity)
        response = jsonify({"error": "Rate limit exceeded", "retry_after": retry_after})
        response.headers["Retry-After"] = str(int(retry_after) + 1)
        return response, 429

    session = get_or_create_session(session_id)

    if session.send_message(message) is None:
        return jsonify({"error": "Agent is already processing"}), 409

    return jsonify({"session_id": session.id, "status": "processing"})


@chat_bp.route("/chat/stream/<session_id>")
def stream_response(session_id):
    """SSE endpoint - streams loop chunks in real-time."""
    sessions = current_app.config["sessions"]
    session = sessions.get(session_id)

    if session is None:
        return jsonify({"error": "Session not found"}), 404

    def generate():
        while True:
            try:
                event = session.stream_queue.get(timeout=30)
            except queue.Empty:
                # Timeout - send keepalive
                yield f"data: {json.dumps({'type': 'keepalive'})}\n\n"
                if not session.is_running:
                    break
                continue
            yield f"data: {json.dumps(event, default=str)}\n\n"
            if event.get("type") in ("done", "error"):
                break

    return Response(
        generate(),
        mimetype="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


@chat_bp.route("/chat/history/<session_id>")
def get_history(session_id):
    """Get conversation history for a session."""
    session = current_app.config["sessions"].get(session_id)
    if session is None:
        return jsonify({"error": "Session not found"}), 404

    return jsonify({
        "session_id": session_id,
        "history": [m.to_dict() for m in session.context.context_manager.messages()],
        "context": session.context.context_manager.stats(),
    })


@chat_bp.route("/chat/sessions", methods=["GET"])
def list_sessions():
    """List all active sessions."""
    sessions = current_app.config["sessions"]
    result = []
    for session in sessions.values():
        info = session.context.info()
        info["is_running"] = session.is_running
        result.append(info)
    return jsonify({"sessions": result})


@chat_bp.route("/chat/session/<session_id>", methods=["DELETE"])
def delete_session(session_id):
    """Delete a session, withdrawing anything still awaiting approval."""
    sessions = current_app.config["sessions"]
    session = sessions.pop(session_id, None)
    if session is None:
        return jsonify({"error": "Session not found"}), 404

    session.close()
    current_app.config["rate_limiter"].reset(session_id)
    return jsonify({"status": "deleted"})


def get_or_create_session(session_id: str | None) -> SessionState:
    sessions = current_app.config["sessions"]
    if session_id and session_id in sessions:
        return sessions[session_id]

    config = current_app.config["agent_config"]
    factory = current_app.config["backend_factory"]
    backends = factory(config) if factory else None
    session = SessionState(config, session_id=session_id, backends=backends)
    sessions[session.id] = session
    current_app.config["web_logger"].info("Created session %s", session.id)
    return session
