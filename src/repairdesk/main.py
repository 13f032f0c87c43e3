from __future__ import annotations

import sys

from .cli import run_cli
from .config import ConfigError, load_config
from .db import Db, DbError
from .domain import CallerContext
from .logging_utils import configure_logging
from .rpc import build_dispatcher


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    path = args[0] if args else "config.toml"
    try:
        cfg = load_config(path)
        configure_logging(cfg.log_level)
        db = Db(cfg.db)
        ctx = CallerContext(
            caller_id=cfg.operator.caller_id,
            branch_id=cfg.operator.branch_id,
            role=cfg.operator.role,
        )
        run_cli(db, build_dispatcher(db, cfg.business), ctx)
        return 0
    except ConfigError as e:
        print(f"[CONFIG ERROR] {e}")
        return 2
    except DbError as e:
        print(f"[DB ERROR] {e}")
        return 3
    except KeyboardInterrupt:
        print("\nInterrupted.")
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
