"""
Database session and connection pool setup.

Pool parameters:
- pool_size: persistent connections (default 10, fits a 4-worker uvicorn)
- max_overflow: extra connections under burst (pool_size + max_overflow at most)
- pool_timeout: seconds to wait for a free connection
- pool_recycle: recycle period (avoids PostgreSQL dropping idle connections)
- pool_pre_ping: liveness check before use

SQLite URLs (tests, local experiments) get a single shared connection instead.
"""

import logging
import time
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from app.config import settings

logger = logging.getLogger("vmorch.db")

# Slow query threshold (ms)
SLOW_QUERY_THRESHOLD_MS = int(getattr(settings, "SLOW_QUERY_THRESHOLD_MS", 500))


def build_engine(url: str):
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=settings.DB_ECHO,
        )
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
        echo=settings.DB_ECHO,
    )


engine = build_engine(settings.database_url)


# ---------------------------------------------------------------------------
# Slow query monitoring
# ---------------------------------------------------------------------------
@event.listens_for(engine, "before_cursor_execute")
def _before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    conn.info.setdefault("query_start_time", []).append(time.perf_counter())


@event.listens_for(engine, "after_cursor_execute")
def _after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    total_ms = (time.perf_counter() - conn.info["query_start_time"].pop()) * 1000

    if total_ms >= SLOW_QUERY_THRESHOLD_MS:
        # Truncate long SQL so logs stay bounded
        stmt_preview = statement[:500] + "..." if len(statement) > 500 else statement
        logger.warning(
            "Slow query detected",
            extra={
                "duration_ms": round(total_ms, 2),
                "statement": stmt_preview,
                "threshold_ms": SLOW_QUERY_THRESHOLD_MS,
            },
        )


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
