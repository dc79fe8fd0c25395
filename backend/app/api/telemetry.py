"""Telemetry API endpoints."""

import re

from flask import Blueprint, current_app, jsonify, request

from services.jira_client import JiraClient
from services.telemetry import TelemetryService
from services.topology import context_summary

bp = Blueprint("telemetry", __name__, url_prefix="/api/telemetry")

PROJECT_KEY_PATTERN = re.compile(r"^[A-Z][A-Z0-9_]+$")


def get_jira_credentials():
    """Extract Jira credentials from request headers."""
    server = request.headers.get("X-Jira-Server", "").rstrip("/")
    email = request.headers.get("X-Jira-Email")
    token = request.headers.get("X-Jira-Token")

    if not all([server, email, token]):
        return None, None, None

    return server, email, token


def is_valid_project_key(project_key: str) -> bool:
    return bool(PROJECT_KEY_PATTERN.match(project_key or ""))


def build_service(server, email, token):
    """Create a TelemetryService sharing the app-wide config and caches."""
    state = current_app.extensions["telemetry"]
    config = state["config"].with_overrides(request.args)
    return TelemetryService(JiraClient(server, email, token), config, state["caches"])


def _check_request(project_key):
    """Return an error response for bad requests, else None."""
    if not is_valid_project_key(project_key):
        return jsonify({"error": f"Invalid project key: {project_key}"}), 400
    return None


@bp.route("/<project_key>", methods=["GET"])
def get_telemetry(project_key):
    """Get the full telemetry set for a project.

    Query params:
        - wip_limit, assignee_capacity, stalled_threshold_hours,
          closed_iteration_count, locale: Optional config overrides

    Returns:
        - Gated metrics and the raw values behind them
        - Health status, structural context and categorized items
    """
    error = _check_request(project_key)
    if error:
        return error

    server, email, token = get_jira_credentials()
    if not server:
        return jsonify({"error": "Missing Jira credentials in headers"}), 401

    try:
        service = build_service(server, email, token)
        result = service.get_telemetry(project_key)
        return jsonify({"data": result.to_dict()})
    except Exception as e:
        current_app.logger.exception(f"Telemetry failed for {project_key}")
        return jsonify({"error": str(e)}), 500


@bp.route("/<project_key>/context", methods=["GET"])
def get_context(project_key):
    """Get the structural context and a plain-text summary of it."""
    error = _check_request(project_key)
    if error:
        return error

    server, email, token = get_jira_credentials()
    if not server:
        return jsonify({"error": "Missing Jira credentials in headers"}), 401

    try:
        service = build_service(server, email, token)
        context = service.get_context(project_key)
        return jsonify({
            "data": {
                "context": context.to_dict(),
                "summary": context_summary(context)
            }
        })
    except Exception as e:
        current_app.logger.exception(f"Context lookup failed for {project_key}")
        return jsonify({"error": str(e)}), 500


@bp.route("/<project_key>/items", methods=["GET"])
def get_items(project_key):
    """Get current items grouped by canonical category."""
    error = _check_request(project_key)
    if error:
        return error

    server, email, token = get_jira_credentials()
    if not server:
        return jsonify({"error": "Missing Jira credentials in headers"}), 401

    try:
        service = build_service(server, email, token)
        return jsonify({"data": service.get_items(project_key)})
    except Exception as e:
        current_app.logger.exception(f"Item lookup failed for {project_key}")
        return jsonify({"error": str(e)}), 500
