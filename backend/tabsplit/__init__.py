# backend/tabsplit/__init__.py
from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from flask import Flask
from flask_cors import CORS

from tabsplit.api.routes import api_bp
from tabsplit.config import Config


def create_app(overrides: Optional[Mapping[str, Any]] = None) -> Flask:
    app = Flask(__name__)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)
    CORS(app)  # ok for MVP; tighten later

    logging.getLogger(__name__).setLevel(app.config.get("LOG_LEVEL", "INFO"))

    app.register_blueprint(api_bp)
    return app
