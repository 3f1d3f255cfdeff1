"""Apply the feedhub schema to the configured database."""

from __future__ import annotations

import argparse
import logging
import pathlib
import sys
from typing import Iterator

from dotenv import load_dotenv
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from feedhub.db.session import create_engine_from_env

logger = logging.getLogger(__name__)

SCHEMA_PATH = pathlib.Path(__file__).with_name("schema.sql")


def schema_statements(sql: str | None = None) -> Iterator[str]:
    """Yield complete SQL statements, skipping blank lines and ``--`` comments."""
    sql = SCHEMA_PATH.read_text() if sql is None else sql
    buffer: list[str] = []
    for line in sql.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("--"):
            continue
        buffer.append(line)
        if stripped.endswith(";"):
            yield "\n".join(buffer)
            buffer.clear()
    if buffer:
        yield "\n".join(buffer)


def run_migrations(engine: Engine) -> int:
    applied = 0
    with engine.begin() as conn:
        for stmt in schema_statements():
            conn.execute(text(stmt))
            applied += 1
    logger.info("Applied %s schema statements", applied)
    return applied


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Apply the feedhub database schema")
    parser.add_argument("--print", dest="print_only", action="store_true", help="print statements instead of applying")
    args = parser.parse_args(argv)
    if args.print_only:
        for stmt in schema_statements():
            print(stmt, end="\n\n")
        return
    load_dotenv()
    logging.basicConfig(level=logging.INFO)
    try:
        run_migrations(create_engine_from_env())
    except SQLAlchemyError as exc:
        print(f"Migration failed: {exc}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
