"""Metrics API routes."""

from flask import Blueprint, current_app, jsonify

metrics_bp = Blueprint("metrics", __name__)


@metrics_bp.route("/metrics", methods=["GET"])
def get_metrics():
    """Return routing statistics and telemetry for active sessions."""
    config = current_app.config["agent_config"]
    sessions = current_app.config["sessions"]

    totals = {"total_requests": 0, "local_requests": 0, "cloud_requests": 0, "estimated_savings": 0.0}
    result = []
    for sid, session in sessions.items():
        router = session.context.router
        stats = router.stats()
        for key in totals:
            totals[key] += stats[key]
        entry = {
            "session_id": sid,
            "router": stats,
            "savings": router.savings_summary(),
            "context": session.context.context_manager.stats(),
        }
        if config.telemetry.enabled:
            entry["metrics"] = session.context.telemetry.summary_dict()
        result.append(entry)

    return jsonify({
        "telemetry_enabled": config.telemetry.enabled,
        "log_dir": config.telemetry.log_dir,
        "totals": totals,
        "sessions": result,
    })
