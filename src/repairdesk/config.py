from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

try:
    import tomllib  # py311+
except ModuleNotFoundError:  # pragma: no cover
    tomllib = None


class ConfigError(Exception):
    pass


@dataclass(frozen=True)
class DbConfig:
    host: str
    port: int
    name: str
    user: str
    password: str
    sslmode: str = "disable"


@dataclass(frozen=True)
class BusinessConfig:
    work_order_prefix: str = "SC"
    low_stock_threshold: int = 2
    default_payment_method: str = "cash"


@dataclass(frozen=True)
class WebConfig:
    host: str = "127.0.0.1"
    port: int = 5000
    base_url: str = "http://127.0.0.1:5000"


@dataclass(frozen=True)
class OperatorConfig:
    caller_id: str = ""
    branch_id: str = "CN1"
    role: str = "staff"


@dataclass(frozen=True)
class AppConfig:
    name: str
    log_level: str
    db: DbConfig
    business: BusinessConfig = field(default_factory=BusinessConfig)
    web: WebConfig = field(default_factory=WebConfig)
    operator: OperatorConfig = field(default_factory=OperatorConfig)


def load_config(path: str | Path) -> AppConfig:
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"Config file not found: {p.resolve()}")

    if tomllib is None:
        raise ConfigError("tomllib not available. Use Python 3.11+.")

    try:
        data = tomllib.loads(p.read_text(encoding="utf-8"))
    except Exception as e:
        raise ConfigError(f"Failed to read config TOML: {e}") from e

    try:
        app = data["app"]
        db = data["db"]
        business = data.get("business", {})
        web = data.get("web", {})
        operator = data.get("operator", {})
        cfg = AppConfig(
            name=str(app.get("name", "RepairDesk")),
            log_level=str(app.get("log_level", "INFO")).upper(),
            db=DbConfig(
                host=str(db["host"]),
                port=int(db.get("port", 5432)),
                name=str(db["name"]),
                user=str(db["user"]),
                password=str(db["password"]),
                sslmode=str(db.get("sslmode", "disable")),
            ),
            business=BusinessConfig(
                work_order_prefix=str(business.get("work_order_prefix", "SC")),
                low_stock_threshold=int(business.get("low_stock_threshold", 2)),
                default_payment_method=str(business.get("default_payment_method", "cash")),
            ),
            web=WebConfig(
                host=str(web.get("host", "127.0.0.1")),
                port=int(web.get("port", 5000)),
                base_url=str(web.get("base_url", "http://127.0.0.1:5000")).rstrip("/"),
            ),
            operator=OperatorConfig(
                caller_id=str(operator.get("caller_id", "")),
                branch_id=str(operator.get("branch_id", "CN1")),
                role=str(operator.get("role", "staff")),
            ),
        )
    except KeyError as e:
        raise ConfigError(f"Missing config key: {e}") from e
    except Exception as e:
        raise ConfigError(f"Invalid config values: {e}") from e

    if cfg.business.low_stock_threshold < 0:
        raise ConfigError("business.low_stock_threshold cannot be negative.")
    if cfg.business.default_payment_method not in {"cash", "bank"}:
        raise ConfigError("business.default_payment_method must be 'cash' or 'bank'.")
    return cfg
