"""MCP chess server: OAuth authorization server plus MCP JSON-RPC endpoint."""
import logging
from typing import Mapping, Optional

from flask import Flask, jsonify
from flask_cors import CORS

import config
from auth import auth_bp, init_oauth_client
from mcp_server import mcp_bp
from oauth_server import oauth_bp
from services import EXTENSION_KEY, build_services

logger = logging.getLogger(__name__)


def configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger().setLevel(logging.DEBUG if debug else logging.INFO)


def create_app(overrides: Optional[Mapping[str, object]] = None) -> Flask:
    settings = config.load_settings(overrides)
    configure_logging(settings.debug)

    app = Flask(__name__)
    app.config["SECRET_KEY"] = settings.secret_key
    app.config["SESSION_COOKIE_HTTPONLY"] = True
    app.config["SESSION_COOKIE_SAMESITE"] = "Lax"

    # MCP agents call the token, discovery and MCP endpoints cross-origin
    agent_cors = {
        "origins": list(settings.cors_origins),
        "methods": ["GET", "POST", "OPTIONS"],
        "allow_headers": ["Content-Type", "Authorization", "Mcp-Protocol-Version"],
        "expose_headers": ["WWW-Authenticate"],
        "max_age": 3600,
    }
    CORS(app, resources={
        r"/oauth/token": agent_cors,
        r"/.well-known/*": agent_cors,
        r"/api/mcp": agent_cors,
    })

    services = build_services(settings)
    services.oauth = init_oauth_client(app, settings)
    app.extensions[EXTENSION_KEY] = services

    app.register_blueprint(oauth_bp)
    app.register_blueprint(mcp_bp)
    app.register_blueprint(auth_bp)

    @app.route("/health", methods=["GET"])
    def health():
        """Health check endpoint."""
        return jsonify({"status": "ok", "service": config.SERVER_NAME})

    return app


if __name__ == "__main__":
    application = create_app()
    settings = application.extensions[EXTENSION_KEY].settings
    logger.info(f"MCP chess server starting on {settings.host}:{settings.port}")
    logger.info(f"MCP endpoint: http://{settings.host}:{settings.port}/api/mcp")
    application.run(host=settings.host, port=settings.port, debug=settings.debug, threaded=True)
