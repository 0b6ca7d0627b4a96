import logging
from typing import Any, AsyncGenerator, Awaitable, Callable

from fastapi import Request
from sqlalchemy import event
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import TimeoutError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from wns_payments.settings import settings

Base = declarative_base()

# Register every mapped table on Base.metadata before the first session is opened.
import wns_payments.infra.models  # noqa: F401,E402

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None

logger = logging.getLogger(__name__)


def _get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _engine, _session_factory
    if _session_factory is None:
        is_postgres = settings.database_url.startswith(("postgresql://", "postgresql+"))

        engine_kwargs: dict[str, Any] = {
            "pool_pre_ping": True,
        }

        if is_postgres:
            engine_kwargs.update({
                "pool_size": settings.database_pool_size,
                "max_overflow": settings.database_max_overflow,
                "pool_timeout": settings.database_pool_timeout_seconds,
            })
            if settings.database_url.startswith("postgresql+asyncpg"):
                engine_kwargs["connect_args"] = {
                    "server_settings": {
                        "statement_timeout": str(int(settings.database_statement_timeout_ms)),
                    },
                }

        _engine = create_async_engine(settings.database_url, **engine_kwargs)
        _configure_logging(_engine)
        if settings.tracing_enabled:
            from wns_payments.infra.tracing import instrument_sqlalchemy

            instrument_sqlalchemy(_engine.sync_engine)
        _session_factory = async_sessionmaker(
            _engine,
            expire_on_commit=False,
            class_=AsyncSession,
        )
    return _session_factory


async def get_db_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    session_factory = getattr(request.app.state, "db_session_factory", None) or _get_session_factory()
    try:
        async with session_factory() as session:
            yield session
    except TimeoutError as exc:
        logger.warning("db_pool_timeout", exc_info=exc)
        raise


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return _get_session_factory()


def get_engine() -> AsyncEngine | None:
    return _engine


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


def dialect_insert(session: AsyncSession):
    """Return the dialect `insert` so callers can use `on_conflict_do_nothing`."""
    bind = session.get_bind()
    dialect = getattr(getattr(bind, "dialect", None), "name", "") if bind else ""
    if dialect == "sqlite":
        return sqlite_insert
    return pg_insert


AfterCommitCallback = Callable[[], Awaitable[Any]]

_AFTER_COMMIT_KEY = "after_commit_callbacks"


def add_after_commit(session: AsyncSession, callback: AfterCommitCallback) -> None:
    session.info.setdefault(_AFTER_COMMIT_KEY, []).append(callback)


def discard_after_commit(session: AsyncSession) -> int:
    return len(session.info.pop(_AFTER_COMMIT_KEY, []))


async def run_after_commit(session: AsyncSession) -> int:
    """Run callbacks queued with `add_after_commit`; call only once the transaction committed.

    Failures are logged and do not stop the remaining callbacks.
    """
    callbacks = session.info.pop(_AFTER_COMMIT_KEY, [])
    for callback in callbacks:
        try:
            await callback()
        except Exception as exc:  # noqa: BLE001
            name = getattr(callback, "__name__", type(callback).__name__)
            logger.warning(
                "after_commit_callback_failed",
                extra={"extra": {"callback": name, "reason": type(exc).__name__}},
            )
    return len(callbacks)


def _configure_logging(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "handle_error")
    def receive_error(context):  # noqa: ANN001
        exc = context.original_exception or context.sqlalchemy_exception
        if isinstance(exc, TimeoutError):
            logger.warning(
                "db_pool_timeout",
                extra={"extra": {"operation": str(context.statement) if context.statement else None}},
            )
