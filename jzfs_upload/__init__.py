"""Flask application factory for the jzfs batch uploader."""

import logging
import os

from flask import Flask

from jzfs_upload.config import get_package_version, get_settings


def create_app() -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)

    settings = get_settings()
    app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "dev-secret-key-change-in-production")
    app.config["SETTINGS"] = settings

    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Register blueprints
    from jzfs_upload.routes.upload import upload_bp

    app.register_blueprint(upload_bp, url_prefix="/api/upload")

    from jzfs_upload.services.log_service import get_log_service

    log = get_log_service()
    log.info(
        "app",
        "app_started",
        f"Application started (v{get_package_version()})",
        {
            "version": get_package_version(),
            "repository": settings.repository,
            "branch": settings.branch,
            "presign": settings.upload_config.presign_capable,
        },
    )

    return app
