"""
Database Connection and Session Management
"""
import asyncio
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)


def utcnow() -> datetime:
    """UTC naive — כל עמודות ה-DateTime בפרויקט שומרות UTC ללא tzinfo"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _describe_statement(statement) -> str:
    """טקסט SQL מקוצר לדיאגנוסטיקה, בלי ערכי הפרמטרים"""
    try:
        return str(statement)[:500]
    except SQLAlchemyError:
        return type(statement).__name__


class TrackedSession(AsyncSession):
    """
    AsyncSession שמתעד את השאילתה האחרונה ומזהיר על חיבור שמוחזק זמן רב.

    הטיימר מתחיל ב-``async with`` ומבוטל ב-close(), כך שכל מסלול יציאה
    (כולל חריגה) משחרר אותו.
    """

    slow_checkout_seconds: float = settings.DB_SLOW_CHECKOUT_SECONDS

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.last_statement: str | None = None
        self._checked_out_at: float | None = None
        self._slow_timer: asyncio.TimerHandle | None = None

    async def __aenter__(self):
        self._checked_out_at = time.monotonic()
        loop = asyncio.get_running_loop()
        self._slow_timer = loop.call_later(
            self.slow_checkout_seconds, self._warn_slow_checkout
        )
        return await super().__aenter__()

    def _warn_slow_checkout(self) -> None:
        held = time.monotonic() - (self._checked_out_at or time.monotonic())
        logger.warning(
            "DB session checked out for too long",
            extra_data={
                "held_seconds": round(held, 2),
                "threshold_seconds": self.slow_checkout_seconds,
                "last_statement": self.last_statement,
            },
        )

    def _cancel_slow_timer(self) -> None:
        if self._slow_timer is not None:
            self._slow_timer.cancel()
            self._slow_timer = None

    async def execute(self, statement, *args, **kwargs):
        self.last_statement = _describe_statement(statement)
        return await super().execute(statement, *args, **kwargs)

    async def scalar(self, statement, *args, **kwargs):
        self.last_statement = _describe_statement(statement)
        return await super().scalar(statement, *args, **kwargs)

    async def close(self) -> None:
        self._cancel_slow_timer()
        await super().close()


engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    pool_pre_ping=True
)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=TrackedSession,
    expire_on_commit=False
)

Base = declarative_base()


def get_session_factory() -> async_sessionmaker:
    """Dependency: factory לעבודה שרצה אחרי שה-session של הבקשה נסגר (BackgroundTasks)"""
    return AsyncSessionLocal


async def get_db() -> AsyncIterator[AsyncSession]:
    """Dependency for getting database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


@asynccontextmanager
async def task_session_factory() -> AsyncIterator[async_sessionmaker]:
    """
    Session factory חדש עבור משימת Celery.

    יוצר engine שקשור ל-event loop הנוכחי (run_async פותח loop חדש לכל
    משימה), ומשחרר אותו בסיום. מעבד ה-batch פותח session נפרד לכל פריט
    שמעובד במקביל מתוך ה-factory הזה.
    """
    task_engine = create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DEBUG,
        pool_pre_ping=True,
        pool_size=max(5, settings.QUEUE_SUB_BATCH_SIZE),
        max_overflow=10
    )
    try:
        yield async_sessionmaker(
            bind=task_engine,
            class_=TrackedSession,
            expire_on_commit=False
        )
    finally:
        await task_engine.dispose()


@asynccontextmanager
async def get_task_session() -> AsyncIterator[AsyncSession]:
    """Create a fresh database session for a Celery task."""
    async with task_session_factory() as session_maker:
        async with session_maker() as session:
            yield session
