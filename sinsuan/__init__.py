from flask import Flask, request
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy
from dotenv import load_dotenv

db = SQLAlchemy()
migrate = Migrate()


def create_app(config: dict | None = None) -> Flask:
    load_dotenv()

    app = Flask(__name__)
    app.config.from_object("sinsuan.config.Config")
    if config:
        app.config.update(config)
    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))

    db.init_app(app)
    migrate.init_app(app, db)

    from sinsuan.geo import GeoConfigError, GeoResolver
    from sinsuan.storage import VisitStore, ensure_location_table
    from sinsuan.visits import VisitCounter

    with app.app_context():
        store = VisitStore(db.engine)
    with store.lend() as conn:
        ensure_location_table(conn)

    try:
        geo = GeoResolver.from_config(app.config, store, app.logger)
    except GeoConfigError as exc:
        raise RuntimeError(str(exc)) from exc
    if not geo.configured:
        app.logger.info("QQ_MAP_KEY/QQ_MAP_SK not set; visitor locations will not be resolved.")

    counter = VisitCounter(store, geo, app.logger)
    app.extensions["sinsuan"] = counter

    from sinsuan.routes import bp

    app.register_blueprint(bp)

    @app.after_request
    def apply_cors_headers(response):
        allowed_headers = ",".join(
            ["Content-Type", app.config["SINSUAN_COUNT_URL_HEADER"], app.config["SINSUAN_ID_HEADER"]]
        )
        response.headers["Access-Control-Allow-Origin"] = request.headers.get("Origin") or "*"
        response.headers["Access-Control-Allow-Methods"] = "GET, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = allowed_headers
        response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        return response

    return app
