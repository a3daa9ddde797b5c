import logging
import os
from typing import Mapping, Optional

from flask import Flask, jsonify
from flask_cors import CORS
from flask_jwt_extended import JWTManager
from flask_pymongo import PyMongo
from werkzeug.middleware.proxy_fix import ProxyFix

from kmercart import (
    auth,
    cart,
    categories,
    notifications,
    orders,
    payouts,
    products,
    reviews,
    uploads,
    users,
    vendors,
)
from kmercart.cli import register_cli
from kmercart.config import load_config
from kmercart.db import ensure_indexes
from kmercart.errors import register_error_handlers


def create_app(config: Optional[Mapping] = None, db=None) -> Flask:
    """Create and configure the Flask application.

    ``db`` replaces the MongoDB database built from ``MONGO_URI``; the test
    suite passes an in-memory database here.
    """
    app = Flask(__name__)
    app.config.update(load_config())
    if config:
        app.config.update(config)

    logging.basicConfig(level=app.config["LOG_LEVEL"])
    app.logger.setLevel(app.config["LOG_LEVEL"])

    trusted_proxy_hops = app.config["TRUSTED_PROXY_HOPS"]
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    os.makedirs(app.config["UPLOAD_FOLDER"], exist_ok=True)

    # --- Initialize extensions ---
    CORS(app, supports_credentials=True, origins=app.config["CORS_ORIGINS"] or "*")
    auth.limiter.init_app(app)
    jwt = JWTManager(app)
    if db is None:
        db = PyMongo(app).db

    ensure_indexes(db, app.logger)
    auth.register_jwt_callbacks(jwt, db)
    register_error_handlers(app)

    # --- Routes ---
    auth.register_routes(app, db)
    users.register_routes(app, db)
    categories.register_routes(app, db)
    products.register_routes(app, db)
    reviews.register_routes(app, db)
    cart.register_routes(app, db)
    orders.register_routes(app, db)
    vendors.register_routes(app, db)
    notifications.register_routes(app, db)
    payouts.register_routes(app, db)
    uploads.register_routes(app, db)
    register_cli(app, db)

    @app.route("/health")
    @app.route(f"{app.config['API_PREFIX']}/health")
    def health():
        return jsonify({"status": "ok"}), 200

    app.logger.info("KmerCart API ready under %s", app.config["API_PREFIX"])
    return app


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 3001))
    create_app().run(host="0.0.0.0", port=port)
