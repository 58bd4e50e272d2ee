from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import List

import psycopg

from .config import PostgresConfig
from .db import get_conn


logger = logging.getLogger(__name__)


def run_sql_file(sql_path: Path, stop_on_error: bool = False) -> bool:
    sql = sql_path.read_text(encoding="utf-8")
    cfg = PostgresConfig()
    with get_conn(cfg) as conn:
        try:
            with conn.transaction():
                conn.execute(sql, prepare=False)
        except psycopg.Error as e:
            if stop_on_error:
                raise
            logger.error("%s failed: %s", sql_path, e)
            return False
    logger.info("applied %s", sql_path)
    return True


def main(argv: List[str] | None = None) -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    parser = argparse.ArgumentParser()
    parser.add_argument("--sql", required=True, action="append", help="Path to a .sql file (repeatable)")
    parser.add_argument("--stop-on-error", action="store_true", help="Stop execution on error")
    args = parser.parse_args(argv)

    for path in args.sql:
        run_sql_file(Path(path), stop_on_error=args.stop_on_error)


if __name__ == "__main__":
    main()
