"""Tests for AuthSession settle and dispose semantics."""

from __future__ import annotations

import asyncio

import pytest

from sonarcli.auth.session import AuthSession


class FakeListener:
    def __init__(self, fail: bool = False) -> None:
        self.close_calls = 0
        self.fail = fail

    async def close(self) -> None:
        self.close_calls += 1
        if self.fail:
            raise OSError("socket already gone")


class TestSettle:
    def test_first_settle_wins(self) -> None:
        async def scenario() -> None:
            session = AuthSession()
            assert session.settled is False
            assert session.settle("first") is True
            assert session.settle("second") is False
            assert session.settle(error=RuntimeError("late")) is False
            assert session.settled is True
            assert await session.result == "first"

        asyncio.run(scenario())

    def test_error_settle(self) -> None:
        async def scenario() -> None:
            session = AuthSession()
            assert session.settle(error=TimeoutError("too slow")) is True
            assert session.settle("token") is False
            with pytest.raises(TimeoutError):
                await session.result

        asyncio.run(scenario())

    def test_sessions_do_not_share_state(self) -> None:
        async def scenario() -> None:
            one, two = AuthSession(), AuthSession()
            one.settle("a")
            assert two.settled is False
            two.settle("b")
            assert (await one.result, await two.result) == ("a", "b")

        asyncio.run(scenario())

    def test_deadline_settles_with_error(self) -> None:
        async def scenario() -> None:
            session = AuthSession()
            session.start_deadline(0.01, TimeoutError("deadline"))
            with pytest.raises(TimeoutError, match="deadline"):
                await session.result

        asyncio.run(scenario())


class TestDispose:
    def test_releases_everything_once(self) -> None:
        async def scenario() -> None:
            session = AuthSession()
            listener = FakeListener()
            session.listener = listener
            session.start_deadline(60, TimeoutError())
            session.prompt_task = asyncio.ensure_future(asyncio.sleep(60))

            await session.dispose()
            await session.dispose()

            assert listener.close_calls == 1
            assert session.timer.cancelled()
            assert session.prompt_task.cancelled()
            assert session.disposed is True

        asyncio.run(scenario())

    def test_cancelled_timer_never_fires(self) -> None:
        async def scenario() -> None:
            session = AuthSession()
            session.start_deadline(0.01, TimeoutError())
            await session.dispose()
            await asyncio.sleep(0.05)
            assert session.settled is False

        asyncio.run(scenario())

    def test_listener_close_error_is_swallowed(self, capfd, plain_output) -> None:
        async def scenario() -> None:
            session = AuthSession()
            session.listener = FakeListener(fail=True)
            await session.dispose()

        asyncio.run(scenario())
        assert "socket already gone" in capfd.readouterr().err

    def test_concurrent_dispose(self) -> None:
        async def scenario() -> None:
            session = AuthSession()
            listener = FakeListener()
            session.listener = listener
            await asyncio.gather(session.dispose(), session.dispose(), session.dispose())
            assert listener.close_calls == 1

        asyncio.run(scenario())

    def test_dispose_waits_for_prompt_cleanup(self) -> None:
        async def scenario() -> None:
            cleaned = []

            async def prompt() -> None:
                try:
                    await asyncio.sleep(60)
                finally:
                    cleaned.append(True)

            session = AuthSession()
            session.prompt_task = asyncio.ensure_future(prompt())
            await asyncio.sleep(0)
            await session.dispose()
            assert cleaned == [True]

        asyncio.run(scenario())
