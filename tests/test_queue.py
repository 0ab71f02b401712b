import asyncio

from consolebridge.command_queue import CommandQueue, QueueEntry
from consolebridge.console import ServerKey
from consolebridge.cooldowns import CooldownKey, CooldownStore
from consolebridge.events import PositionEvent
from consolebridge.position import PositionResolver
from consolebridge.rules import Rule
from tests.fakes import FakeRoleGate, ManualClock, Recorder

KEY = ServerKey("g1", "s1")


def make_queue(tmp_path, gate=None, timeout=0.2):
    clock = ManualClock()
    cooldowns = CooldownStore(tmp_path / "cooldowns.json", clock=clock)
    queue = CommandQueue(
        cooldowns, PositionResolver(timeout=timeout), gate or FakeRoleGate(), command_delay=0
    )
    return queue, cooldowns, clock


def entry(rule, player="Bob", discord_id=None):
    return QueueEntry(rule=rule, player_name=player, timestamp=0, discord_id=discord_id)


def test_pump_dispatches_one_entry_per_call(tmp_path):
    queue, cooldowns, clock = make_queue(tmp_path)
    heal = Rule.create("heal", command="heal {PlayerName}", claim_msg="{PlayerName} healed")
    queue.push(KEY, entry(heal, "Bob"))
    queue.push(KEY, entry(heal, "Amy"))
    execute = Recorder()

    assert asyncio.run(queue.pump(KEY, execute)) is True
    assert execute.commands == ["heal Bob", 'say "Bob healed"']
    assert [e.player_name for e in queue.pending(KEY)] == ["Amy"]
    assert cooldowns.last_fired(CooldownKey("g1", "s1", "Bob", "heal")) == clock.now


def test_pump_skips_while_draining(tmp_path):
    queue, _cooldowns, _clock = make_queue(tmp_path)
    heal = Rule.create("heal", command="heal {PlayerName}")
    queue.push(KEY, entry(heal, "Bob"))
    queue.push(KEY, entry(heal, "Amy"))
    release = None
    commands = []

    async def slow_execute(command):
        commands.append(command)
        await release.wait()
        return "ok"

    async def scenario():
        nonlocal release
        release = asyncio.Event()
        first = asyncio.create_task(queue.pump(KEY, slow_execute))
        await asyncio.sleep(0)
        assert queue.is_draining(KEY)
        second = await queue.pump(KEY, slow_execute)
        release.set()
        return await first, second

    assert asyncio.run(scenario()) == (True, False)
    assert commands == ["heal Bob"]
    assert len(queue.pending(KEY)) == 1


def test_entry_queued_behind_a_slow_dispatch_respects_cooldown(tmp_path):
    queue, cooldowns, clock = make_queue(tmp_path)
    slow = Rule.create("slow", command="slow")
    heal = Rule.create("heal", command="heal {PlayerName}", cooldown_ms=60_000)
    queue.push(KEY, entry(slow, "Amy"))
    queue.push(KEY, entry(heal, "Bob"))
    release = None
    commands = []

    async def execute(command):
        commands.append(command)
        if command == "slow":
            await release.wait()
        return "ok"

    async def scenario():
        nonlocal release
        release = asyncio.Event()
        blocked = asyncio.create_task(queue.pump(KEY, execute))
        await asyncio.sleep(0)
        clock.advance(5_000)
        queue.push(KEY, entry(heal, "Bob"))
        release.set()
        await blocked
        await queue.pump(KEY, execute)
        clock.advance(1_000)
        await queue.pump(KEY, execute)

    asyncio.run(scenario())
    assert commands == ["slow", "heal Bob"]
    assert queue.pending(KEY) == []
    assert cooldowns.last_fired(CooldownKey("g1", "s1", "Bob", "heal")) == clock.now - 1_000


def test_spawn_uses_resolved_position(tmp_path):
    queue, cooldowns, _clock = make_queue(tmp_path)
    kit = Rule.create("kit", entity="kit_pvp", cooldown_ms=60_000, claim_msg="Enjoy {PlayerName}")
    queue.push(KEY, entry(kit))
    commands = []

    async def execute(command):
        commands.append(command)
        if command.startswith("printpos"):
            queue.positions.handle_position(KEY, PositionEvent("5", "6", "7"))
        return "ok"

    asyncio.run(queue.pump(KEY, execute))
    assert commands == ["printpos Bob", "spawn kit_pvp 5,6,7", 'say "Enjoy Bob"']
    assert CooldownKey("g1", "s1", "Bob", "kit") in cooldowns


def test_spawn_position_timeout_drops_entry_without_cooldown(tmp_path):
    queue, cooldowns, _clock = make_queue(tmp_path, timeout=0.05)
    kit = Rule.create("kit", entity="kit_pvp", cooldown_ms=60_000)
    queue.push(KEY, entry(kit))
    execute = Recorder()

    assert asyncio.run(queue.pump(KEY, execute)) is True
    assert execute.commands == ["printpos Bob"]
    assert queue.pending(KEY) == []
    assert len(cooldowns) == 0
    assert queue.positions.pending_count() == 0


def test_command_removes_role_after_firing(tmp_path):
    gate = FakeRoleGate(roles={11: {"7"}})
    queue, _cooldowns, _clock = make_queue(tmp_path, gate=gate)
    rule = Rule.create("vip", command="vip {PlayerName}", role_id=7, remove_role=True)
    queue.push(KEY, entry(rule, discord_id=11))

    asyncio.run(queue.pump(KEY, Recorder()))
    assert gate.removed == [("g1", 11, "7")]


def test_role_removal_failure_still_sends_claim(tmp_path):
    gate = FakeRoleGate(roles={11: {"7"}})
    queue, _cooldowns, _clock = make_queue(tmp_path, gate=gate)
    rule = Rule.create(
        "vip", command="vip {PlayerName}", role_id=7, remove_role=True, claim_msg="done"
    )
    queue.push(KEY, entry(rule, discord_id=11))
    gate.fail = True
    execute = Recorder()

    asyncio.run(queue.pump(KEY, execute))
    assert execute.commands == ["vip Bob", 'say "done"']


def test_failed_command_is_dropped_and_logged(tmp_path):
    queue, cooldowns, _clock = make_queue(tmp_path)
    queue.push(KEY, entry(Rule.create("heal", command="heal {PlayerName}")))
    execute = Recorder(fail_prefixes=("heal",))

    assert asyncio.run(queue.pump(KEY, execute)) is True
    assert queue.pending(KEY) == []
    assert len(cooldowns) == 0


def test_pump_all_runs_servers_independently(tmp_path):
    queue, _cooldowns, _clock = make_queue(tmp_path)
    other = ServerKey("g1", "s2")
    offline = ServerKey("g2", "s9")
    heal = Rule.create("heal", command="heal {PlayerName}")
    queue.push(KEY, entry(heal, "Bob"))
    queue.push(other, entry(heal, "Amy"))
    queue.push(offline, entry(heal, "Zed"))
    executors = {KEY: Recorder(), other: Recorder()}

    async def scenario():
        tasks = queue.pump_all(executors.get)
        await asyncio.gather(*tasks)
        return len(tasks)

    assert asyncio.run(scenario()) == 2
    assert executors[KEY].commands == ["heal Bob"]
    assert executors[other].commands == ["heal Amy"]
    assert len(queue.pending(offline)) == 1
