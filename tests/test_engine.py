import asyncio

from consolebridge.command_queue import CommandQueue
from consolebridge.console import ServerKey
from consolebridge.cooldowns import CooldownStore
from consolebridge.engine import BindEngine
from consolebridge.events import PositionEvent
from consolebridge.position import PositionResolver
from consolebridge.rules import Rule, RuleRegistry
from tests.fakes import FakeRoleGate, ManualClock, Recorder

KEY = ServerKey("g1", "s1")


def make_engine(tmp_path, links=None, gate=None, clock=None):
    clock = clock or ManualClock()
    gate = gate or FakeRoleGate()
    rules = RuleRegistry(tmp_path / "binds.json")
    cooldowns = CooldownStore(tmp_path / "cooldowns.json", clock=clock)
    queue = CommandQueue(cooldowns, PositionResolver(timeout=0.2), gate, command_delay=0)
    links = links if links is not None else {}

    def lookup(guild_id, player_name):
        value = links.get(player_name)
        if isinstance(value, Exception):
            raise value
        return value

    engine = BindEngine(rules, cooldowns, queue, gate, lookup, spam_window_seconds=5, clock=clock)
    return engine, clock


def test_heal_end_to_end(tmp_path):
    engine, _clock = make_engine(tmp_path)
    engine.rules.add("g1", "s1", Rule.create("heal", command="heal {PlayerName}", cooldown_ms=0))
    execute = Recorder()

    async def scenario():
        queued = await engine.handle_message("g1", "s1", "[CHAT LOCAL] Bob : heal", execute)
        assert queued == 1
        pending = engine.queue.pending(KEY)
        assert [entry.player_name for entry in pending] == ["Bob"]
        await engine.queue.wait_idle()

    asyncio.run(scenario())
    assert execute.commands == ["heal Bob"]
    assert engine.queue.pending(KEY) == []


def test_kit_second_attempt_within_cooldown_only_messages(tmp_path):
    engine, clock = make_engine(tmp_path)
    engine.rules.add(
        "g1",
        "s1",
        Rule.create(
            "kit",
            entity="kit_pvp",
            cooldown_ms=60_000,
            cooldown_msg="{PlayerName} wait {Cooldown}",
        ),
    )
    commands = []

    async def execute(command):
        commands.append(command)
        if command.startswith("printpos"):
            engine.queue.positions.handle_position(KEY, PositionEvent("1.0", "2.0", "3.0"))
        return "ok"

    async def scenario():
        await engine.handle_message("g1", "s1", "[CHAT LOCAL] Bob : kit", execute)
        await engine.queue.wait_idle()
        clock.advance(10_000)
        queued = await engine.handle_message("g1", "s1", "[CHAT LOCAL] Bob : kit", execute)
        await engine.queue.wait_idle()
        return queued

    assert asyncio.run(scenario()) == 0
    assert commands == ["printpos Bob", "spawn kit_pvp 1.0,2.0,3.0", 'say "Bob wait 0:00:00"']


def test_spam_gate_drops_second_line_within_window(tmp_path):
    engine, clock = make_engine(tmp_path)
    engine.rules.add("g1", "s1", Rule.create("heal", command="heal {PlayerName}"))
    engine.rules.add("g1", "s1", Rule.create("tp", command="tp {PlayerName}"))
    execute = Recorder()

    async def scenario():
        first = await engine.handle_message("g1", "s1", "[CHAT LOCAL] Bob : heal", execute)
        clock.advance(4_999)
        second = await engine.handle_message("g1", "s1", "[CHAT LOCAL] Bob : tp", execute)
        other = await engine.handle_message("g1", "s1", "[CHAT LOCAL] Amy : tp", execute)
        clock.advance(1)
        third = await engine.handle_message("g1", "s1", "[CHAT LOCAL] Bob : tp", execute)
        return first, second, other, third

    assert asyncio.run(scenario()) == (1, 0, 1, 1)


def test_role_gated_rule_never_fires_for_unlinked_player(tmp_path):
    engine, _clock = make_engine(tmp_path)
    engine.rules.add("g1", "s1", Rule.create("vip", command="vip {PlayerName}", role_id=7))
    execute = Recorder()

    async def scenario():
        queued = await engine.handle_message("g1", "s1", "[CHAT LOCAL] Bob : vip", execute)
        await engine.queue.wait_idle()
        return queued

    assert asyncio.run(scenario()) == 0
    assert execute.commands == []


def test_role_gated_rule_fires_for_linked_member_with_role(tmp_path):
    gate = FakeRoleGate(roles={11: {"7"}})
    engine, _clock = make_engine(tmp_path, links={"Bob": 11, "Amy": 12}, gate=gate)
    engine.rules.add("g1", "s1", Rule.create("vip", command="vip {PlayerName}", role_id=7))
    execute = Recorder()

    async def scenario():
        bob = await engine.handle_message("g1", "s1", "[CHAT LOCAL] Bob : vip", execute)
        entry = engine.queue.pending(KEY)[0]
        amy = await engine.handle_message("g1", "s1", "[CHAT LOCAL] Amy : vip", execute)
        await engine.queue.wait_idle()
        return bob, entry, amy

    bob, entry, amy = asyncio.run(scenario())
    assert (bob, amy) == (1, 0)
    assert entry.discord_id == 11
    assert execute.commands == ["vip Bob"]


def test_role_lookup_failure_skips_rule(tmp_path):
    gate = FakeRoleGate(fail=True)
    engine, _clock = make_engine(tmp_path, links={"Bob": 11}, gate=gate)
    engine.rules.add("g1", "s1", Rule.create("vip", command="vip {PlayerName}", role_id=7))

    queued = asyncio.run(
        engine.handle_message("g1", "s1", "[CHAT LOCAL] Bob : vip", Recorder())
    )
    assert queued == 0


def test_failing_rule_does_not_stop_siblings(tmp_path):
    engine, _clock = make_engine(tmp_path, links={"Bob": RuntimeError("db locked")})
    engine.rules.add("g1", "s1", Rule.create("heal", command="vip heal", role_id=7))
    engine.rules.add("g1", "s1", Rule.create("heal", command="heal {PlayerName}"))
    execute = Recorder()

    async def scenario():
        queued = await engine.handle_message("g1", "s1", "[CHAT LOCAL] Bob : heal", execute)
        await engine.queue.wait_idle()
        return queued

    assert asyncio.run(scenario()) == 1
    assert execute.commands == ["heal Bob"]


def test_chat_type_filter_and_case_insensitive_match(tmp_path):
    engine, clock = make_engine(tmp_path)
    engine.rules.add(
        "g1", "s1", Rule.create("heal", command="heal {PlayerName}", chat_type="LOCAL")
    )

    async def scenario():
        team = await engine.handle_message("g1", "s1", "[CHAT TEAM] Bob : heal", Recorder())
        clock.advance(5_000)
        local = await engine.handle_message(
            "g1", "s1", "[CHAT LOCAL] Bob : please HEAL me", Recorder()
        )
        return team, local

    assert asyncio.run(scenario()) == (0, 1)


def test_server_without_rules_is_not_spam_gated(tmp_path):
    engine, _clock = make_engine(tmp_path)
    queued = asyncio.run(
        engine.handle_message("g1", "s1", "[CHAT LOCAL] Bob : heal", Recorder())
    )
    assert queued == 0
    assert not engine.is_processing("g1", "s1", "Bob")


def test_quoted_player_names_are_normalized(tmp_path):
    engine, _clock = make_engine(tmp_path)
    engine.rules.add("g1", "s1", Rule.create("heal", command="heal {PlayerName}"))
    execute = Recorder()

    async def scenario():
        await engine.handle_message("g1", "s1", "[CHAT LOCAL] Big Bob : heal", execute)
        await engine.queue.wait_idle()

    asyncio.run(scenario())
    assert execute.commands == ['heal "Big Bob"']
