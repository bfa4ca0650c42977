"""Approval API routes - list, answer and withdraw pending tool approvals."""

from flask import Blueprint, current_app, jsonify, request

approvals_bp = Blueprint("approvals", __name__)


def _session_or_404(session_id):
    session = current_app.config["sessions"].get(session_id)
    if session is None:
        return None, (jsonify({"error": "Session not found"}), 404)
    return session, None


@approvals_bp.route("/approvals/<session_id>", methods=["GET"])
def list_pending(session_id):
    session, error = _session_or_404(session_id)
    if error:
        return error
    return jsonify({"session_id": session_id, "pending": session.pending_approvals()})


@approvals_bp.route("/approvals/<session_id>/<request_id>", methods=["POST"])
def respond(session_id, request_id):
    """Approve or deny one pending request: ``{"approved": bool, "reason": str}``."""
    session, error = _session_or_404(session_id)
    if error:
        return error

    data = request.get_json(silent=True) or {}
    approved = data.get("approved")
    if not isinstance(approved, bool):
        return jsonify({"error": "'approved' must be a boolean"}), 400

    if not session.respond(request_id, approved, data.get("reason")):
        return jsonify({"error": "No pending request with that id"}), 404
    current_app.config["web_logger"].info(
        "Session %s request %s %s", session_id, request_id, "approved" if approved else "denied"
    )
    return jsonify({"status": "approved" if approved else "denied"})


@approvals_bp.route("/approvals/<session_id>/<request_id>", methods=["DELETE"])
def withdraw(session_id, request_id):
    session, error = _session_or_404(session_id)
    if error:
        return error
    if not session.withdraw(request_id):
        return jsonify({"error": "No pending request with that id"}), 404
    current_app.config["web_logger"].info("Session %s request %s withdrawn", session_id, request_id)
    return jsonify({"status": "withdrawn"})
