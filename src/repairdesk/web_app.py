from __future__ import annotations

from flask import Flask, jsonify, request

from .config import AppConfig, ConfigError, load_config
from .db import Db
from .domain import CallerContext
from .errors import EngineError
from .logging_utils import configure_logging, get_logger
from .rpc import RpcDispatcher, build_dispatcher

log = get_logger(__name__)


def caller_from_headers(headers) -> CallerContext:
    return CallerContext(
        caller_id=headers.get("X-Caller-Id", "").strip(),
        branch_id=headers.get("X-Branch-Id", "").strip(),
        role=headers.get("X-Role", "").strip().lower(),
    )


def create_app(dispatcher: RpcDispatcher, *, name: str = "RepairDesk") -> Flask:
    app = Flask(__name__)
    app.config["APP_NAME"] = name
    app.json.sort_keys = False
    app.json.ensure_ascii = False
    app.extensions["repairdesk.dispatcher"] = dispatcher

    @app.errorhandler(EngineError)
    def engine_error(e: EngineError):
        return jsonify(e.to_payload()), e.http_status

    @app.get("/health")
    def health():
        return jsonify({"status": "ok", "operations": list(dispatcher.operations)})

    @app.post("/rpc/<operation>")
    def rpc(operation: str):
        params = request.get_json(silent=True) or {}
        if not isinstance(params, dict):
            params = {}
        result = dispatcher.call(operation, params, caller_from_headers(request.headers))
        return jsonify(result)

    @app.get("/work-orders/<order_id>")
    def work_order(order_id: str):
        result = dispatcher.call("work_order_get", {"order_id": order_id}, caller_from_headers(request.headers))
        return jsonify(result)

    return app


def app_from_config(cfg: AppConfig) -> Flask:
    configure_logging(cfg.log_level)
    db = Db(cfg.db)
    return create_app(build_dispatcher(db, cfg.business), name=cfg.name)


def main() -> int:
    try:
        cfg = load_config("config.toml")
    except ConfigError as e:
        print(f"[CONFIG ERROR] {e}")
        return 2
    app = app_from_config(cfg)
    log.info("Serving %s on %s:%s", cfg.name, cfg.web.host, cfg.web.port)
    app.run(host=cfg.web.host, port=cfg.web.port)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
