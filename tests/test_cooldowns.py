import json

from consolebridge.cooldowns import CooldownKey, CooldownStore, parse_cooldown_key
from consolebridge.rules import Rule
from tests.fakes import ManualClock


def make_rule(trigger="kit", cooldown=60_000):
    return Rule.create(trigger, entity="kit_pvp", cooldown_ms=cooldown)


def test_remaining_boundaries(tmp_path):
    clock = ManualClock()
    store = CooldownStore(tmp_path / "cooldowns.json", clock=clock)
    rule = make_rule(cooldown=60_000)
    key = CooldownKey("g1", "s1", "Bob", "kit")
    t0 = clock.now

    assert store.remaining(key, rule) == 0
    store.record(key)
    assert store.remaining(key, rule, now=t0 + 60_000 - 1) == 1
    assert store.remaining(key, rule, now=t0 + 60_000) == 0
    assert store.remaining(key, rule, now=t0 + 90_000) == 0


def test_record_persists_composite_key(tmp_path):
    path = tmp_path / "cooldowns.json"
    store = CooldownStore(path, clock=ManualClock(5000))
    store.record(CooldownKey("g1", "s1", '"Big_Bob"', "free kit"))
    assert json.loads(path.read_text()) == {'g1_s1_"Big_Bob"_free kit': 5000}


def test_parse_key_recovers_separator_in_name_and_trigger():
    triggers = {("g1", "s1"): ["kit", "my_kit"]}

    def triggers_for(guild_id, server_id):
        return triggers.get((guild_id, server_id), [])

    key = parse_cooldown_key("g1_s1_Big_Bob_my_kit", triggers_for)
    assert key == CooldownKey("g1", "s1", "Big_Bob", "my_kit")
    assert parse_cooldown_key("g1_s1_Bob_kit", triggers_for) == CooldownKey("g1", "s1", "Bob", "kit")
    assert parse_cooldown_key("g1_s1_Bob_unknown", triggers_for) is None
    assert parse_cooldown_key("g1_s1", triggers_for) is None


def test_load_and_prune_drops_expired_and_orphaned(tmp_path):
    path = tmp_path / "cooldowns.json"
    now = 1_000_000
    path.write_text(
        json.dumps(
            {
                "g1_s1_Bob_kit": now - 10_000,
                "g1_s1_Amy_kit": now - 60_000,
                "g1_s1_Bob_gone": now - 1,
                "garbage": now,
            }
        )
    )
    rules = {("g1", "s1", "kit"): make_rule(cooldown=60_000)}
    store = CooldownStore(path)
    kept = store.load_and_prune(
        lambda g, s, t: rules.get((g, s, t)),
        lambda g, s: [t for (rg, rs, t) in rules if (rg, rs) == (g, s)],
        now=now,
    )
    assert kept == 1
    assert CooldownKey("g1", "s1", "Bob", "kit") in store
    assert CooldownKey("g1", "s1", "Amy", "kit") not in store


def test_load_missing_file_is_empty(tmp_path):
    store = CooldownStore(tmp_path / "missing.json")
    assert store.load_and_prune(lambda *a: None, lambda *a: []) == 0
    assert len(store) == 0


def test_reset_single_and_player(tmp_path):
    store = CooldownStore(tmp_path / "cooldowns.json", clock=ManualClock())
    store.record(CooldownKey("g1", "s1", "Bob", "kit"))
    store.record(CooldownKey("g1", "s1", "Bob", "heal"))
    store.record(CooldownKey("g1", "s1", "Amy", "kit"))

    assert store.reset(CooldownKey("g1", "s1", "Bob", "kit")) is True
    assert store.reset(CooldownKey("g1", "s1", "Bob", "kit")) is False

    assert store.reset_player("g1", "s1", "Bob", ["kit", "heal"]) == 2
    assert CooldownKey("g1", "s1", "Bob", "heal") not in store
    assert CooldownKey("g1", "s1", "Amy", "kit") in store
