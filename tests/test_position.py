import asyncio

import pytest

from consolebridge.console import ServerKey
from consolebridge.errors import PositionTimeout
from consolebridge.events import PositionEvent
from consolebridge.position import PositionResolver
from tests.fakes import Recorder

S1 = ServerKey("g1", "s1")
S2 = ServerKey("g1", "s2")


def test_position_line_only_resolves_its_own_server():
    resolver = PositionResolver(timeout=1)

    async def scenario():
        first = asyncio.create_task(resolver.get_position(S1, "Bob", Recorder()))
        second = asyncio.create_task(resolver.get_position(S2, "Amy", Recorder()))
        await asyncio.sleep(0)
        assert resolver.pending_count() == 2
        assert resolver.handle_position(S2, PositionEvent("9", "9", "9")) is True
        assert await second == "9,9,9"
        assert not first.done()
        resolver.handle_position(S1, PositionEvent("1", "2", "3"))
        return await first

    assert asyncio.run(scenario()) == "1,2,3"
    assert resolver.pending_count() == 0


def test_oldest_request_on_a_server_is_answered_first():
    resolver = PositionResolver(timeout=1)

    async def scenario():
        bob = asyncio.create_task(resolver.get_position(S1, "Bob", Recorder()))
        await asyncio.sleep(0)
        amy = asyncio.create_task(resolver.get_position(S1, "Amy", Recorder()))
        await asyncio.sleep(0)
        resolver.handle_position(S1, PositionEvent("1", "1", "1"))
        resolver.handle_position(S1, PositionEvent("2", "2", "2"))
        return await bob, await amy

    assert asyncio.run(scenario()) == ("1,1,1", "2,2,2")


def test_printpos_is_issued_for_the_player():
    resolver = PositionResolver(timeout=1)
    execute = Recorder()

    async def scenario():
        task = asyncio.create_task(resolver.get_position(S1, '"Big Bob"', execute))
        await asyncio.sleep(0)
        resolver.handle_position(S1, PositionEvent("0", "0", "0"))
        await task

    asyncio.run(scenario())
    assert execute.commands == ['printpos "Big Bob"']


def test_timeout_raises_and_retracts():
    resolver = PositionResolver(timeout=0.05)

    with pytest.raises(PositionTimeout):
        asyncio.run(resolver.get_position(S1, "Bob", Recorder()))
    assert resolver.pending_count() == 0
    assert resolver.handle_position(S1, PositionEvent("1", "2", "3")) is False


def test_unsolicited_position_is_ignored():
    resolver = PositionResolver()
    assert resolver.handle_position(S1, PositionEvent("1", "2", "3")) is False
