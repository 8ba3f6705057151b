# backend/core/query_logger.py

import logging
import time

from sqlalchemy import event
from sqlalchemy.engine import Engine

from core.config import settings

logger = logging.getLogger("sqlalchemy.engine")
query_logger = logging.getLogger("query_performance")


def setup_query_logging(engine: Engine):
    """
    Attach slow-query logging and SQLite connection pragmas to an engine.

    Args:
        engine: SQLAlchemy engine instance
    """
    threshold = settings.slow_query_threshold_seconds

    @event.listens_for(engine, "before_cursor_execute")
    def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        conn.info.setdefault("query_start_time", []).append(time.time())

    @event.listens_for(engine, "after_cursor_execute")
    def after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        total_time = time.time() - conn.info["query_start_time"].pop(-1)
        if total_time > threshold:
            query_logger.warning(f"SLOW QUERY ({total_time:.3f}s): {statement[:200]}...")
        if settings.log_sql_queries:
            logger.debug("Query Complete in %.3fs", total_time)

    if engine.url.get_backend_name() == "sqlite":

        @event.listens_for(engine, "connect")
        def setup_sqlite_pragma(dbapi_conn, connection_record):
            """Enable foreign keys on SQLite connections"""
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys = ON")
            cursor.close()
