"""
Shared fixtures: a fresh in-memory database per test, a seeded course
directory and a recording notification sink.
"""
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from exam_engine.integrations.in_memory import InMemoryCourseDirectory, InMemoryNotificationSink
from exam_engine.limiter import limiter
from exam_engine.orm import Base
from exam_engine.tests.helpers import (
    COURSE_ID, ADMIN_COURSE_ID, TEACHER_ID, ADMIN_ID, SECOND_ADMIN_ID,
    STUDENT_ID, OTHER_STUDENT_ID
)

# Test database URL
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

limiter.enabled = False


@pytest_asyncio.fixture
async def db_engine():
    """In-memory engine; StaticPool keeps every session on the same database."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        echo=False
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """
    File-backed database for tests that need truly separate connections
    (concurrent writers racing on the same rows).
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'exam_engine_test.db'}",
        connect_args={"timeout": 30.0},
        echo=False
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def directory() -> InMemoryCourseDirectory:
    directory = InMemoryCourseDirectory()
    directory.add_course(COURSE_ID, TEACHER_ID, students=[STUDENT_ID, OTHER_STUDENT_ID])
    directory.add_course(ADMIN_COURSE_ID, ADMIN_ID, students=[STUDENT_ID])
    directory.add_admin(ADMIN_ID)
    directory.add_admin(SECOND_ADMIN_ID)
    return directory


@pytest.fixture
def sink() -> InMemoryNotificationSink:
    return InMemoryNotificationSink()
