"""
Unit tests for scenario-scoped contexts.
"""

import asyncio

import pytest

from conftest import FakeDriver, FakeSessionFactory
from healrun.core.types import CreatedResource
from healrun.error_handling.exceptions import OrchestrationError
from healrun.orchestration.context import TestContext, acquire_context


class TestTestContext:
    """Test context helpers."""

    def test_resolve_url(self):
        ctx = TestContext(driver=FakeDriver(), base_url="http://app.test/")

        assert ctx.resolve_url("/courses") == "http://app.test/courses"
        assert ctx.resolve_url("courses") == "http://app.test/courses"
        assert ctx.resolve_url("https://cdn.test/a.png") == "https://cdn.test/a.png"

    def test_register_resource_stores_id(self):
        ctx = TestContext(driver=FakeDriver(), base_url="http://app.test")

        ctx.register_resource(CreatedResource(kind="course", id="abc123", store_key="courseId"))

        assert ctx.store["courseId"] == "abc123"
        assert ctx.resources[0].kind == "course"


class TestAcquireContext:
    """Test ownership and release of contexts."""

    @pytest.mark.asyncio
    async def test_session_closed_on_exit(self):
        factory = FakeSessionFactory()

        async with acquire_context(factory, "http://app.test", store={"a": "1"}) as ctx:
            ctx.assert_owned()
            assert factory.open_count == 1

        assert ctx.closed is True
        assert factory.sessions[0].closed is True
        assert factory.open_count == 0

    @pytest.mark.asyncio
    async def test_session_closed_on_exception(self):
        factory = FakeSessionFactory()

        with pytest.raises(ValueError):
            async with acquire_context(factory, "http://app.test"):
                raise ValueError("scenario blew up")

        assert factory.sessions[0].closed is True

    @pytest.mark.asyncio
    async def test_store_is_copied(self):
        store = {"testEmail": "qa@example.com"}

        async with acquire_context(FakeSessionFactory(), "http://app.test", store=store) as ctx:
            ctx.store["courseId"] = "abc123"

        assert store == {"testEmail": "qa@example.com"}

    @pytest.mark.asyncio
    async def test_use_from_other_task_rejected(self):
        async with acquire_context(FakeSessionFactory(), "http://app.test") as ctx:
            async def borrow():
                ctx.assert_owned()

            with pytest.raises(OrchestrationError, match="outside its owning scenario"):
                await asyncio.create_task(borrow())

    @pytest.mark.asyncio
    async def test_released_context_rejected(self):
        async with acquire_context(FakeSessionFactory(), "http://app.test") as ctx:
            pass

        with pytest.raises(OrchestrationError, match="already released"):
            ctx.assert_owned()

    @pytest.mark.asyncio
    async def test_close_failure_logged_not_raised(self):
        class StickyDriver(FakeDriver):
            async def close(self):
                raise RuntimeError("browser already gone")

        async with acquire_context(FakeSessionFactory(StickyDriver), "http://app.test") as ctx:
            pass

        assert ctx.closed is True

    @pytest.mark.asyncio
    async def test_stalled_close_bounded(self):
        class StalledCloseDriver(FakeDriver):
            async def close(self):
                await asyncio.Event().wait()

        async def use():
            async with acquire_context(
                FakeSessionFactory(StalledCloseDriver), "http://app.test", close_timeout_ms=100
            ) as ctx:
                return ctx

        ctx = await asyncio.wait_for(use(), 5)

        assert ctx.closed is True
