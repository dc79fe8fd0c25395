"""Flask application factory."""

from flask import Flask
from flask_cors import CORS

from services.telemetry import TelemetryCaches
from services.telemetry_config import load_telemetry_config


def load_telemetry_settings(app, path=None):
    """Load telemetry defaults from config/telemetry-config.json."""
    config = load_telemetry_config(path)
    app.logger.info(
        f"Telemetry defaults: wip limit {config.wip_limit}, "
        f"{config.closed_iteration_count} closed iterations, "
        f"{config.history_window_days}-day history"
    )
    return config


def create_app(config_path=None):
    """Create and configure the Flask application."""
    app = Flask(__name__)

    # Enable CORS for frontend
    CORS(app, resources={
        r"/api/*": {
            "origins": ["http://localhost:5173", "http://127.0.0.1:5173"],
            "methods": ["GET", "OPTIONS"],
            "allow_headers": [
                "Content-Type",
                "X-Jira-Token", "X-Jira-Email", "X-Jira-Server"
            ]
        }
    })

    # Register blueprints
    from app.api import telemetry
    app.register_blueprint(telemetry.bp)

    # Config and caches live for the whole process
    app.extensions["telemetry"] = {
        "config": load_telemetry_settings(app, config_path),
        "caches": TelemetryCaches()
    }

    # Health check endpoint
    @app.route("/health")
    def health():
        return {"status": "ok"}

    return app
