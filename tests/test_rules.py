import json

import pytest

from consolebridge.errors import InvalidIndex, ValidationError
from consolebridge.rules import BindType, ChatType, Rule, RuleRegistry


def test_rule_create_populates_exactly_one_action():
    spawn = Rule.create("kit", entity="kit_pvp", command="ignored")
    assert spawn.type == BindType.SPAWN
    assert spawn.command is None
    command = Rule.create("heal", command="heal {PlayerName}", chat_type="local")
    assert command.type == BindType.COMMAND
    assert command.entity is None
    assert command.chat_type == ChatType.LOCAL


def test_rule_create_validation():
    with pytest.raises(ValidationError):
        Rule.create("", command="x")
    with pytest.raises(ValidationError):
        Rule.create("heal")
    with pytest.raises(ValidationError):
        Rule.create("heal", command="x", chat_type="whisper")
    with pytest.raises(ValidationError):
        Rule.create("heal", command="x", cooldown_ms=-1)


def test_rule_accepts_chat_type():
    assert Rule.create("a", command="x").accepts_chat_type("TEAM")
    local = Rule.create("a", command="x", chat_type=ChatType.LOCAL)
    assert local.accepts_chat_type("local")
    assert not local.accepts_chat_type("SERVER")


def test_rule_json_round_trip_keeps_unknown_fields():
    raw = {
        "message": "kit",
        "entity": "kit_pvp",
        "command": None,
        "cooldown": 60000,
        "roleId": "42",
        "removeRole": True,
        "cooldownMsg": "wait {Cooldown}",
        "claimMsg": None,
        "chatType": "TEAM",
        "type": "spawn",
        "createdBy": "admin",
    }
    rule = Rule.from_dict(raw)
    assert rule.type == BindType.SPAWN
    assert rule.cooldown == 60000
    assert rule.role_id == "42"
    assert rule.to_dict() == raw


def test_legacy_rule_without_type_or_chat_type():
    rule = Rule.from_dict({"message": "heal", "command": "heal {PlayerName}", "cooldown": 0})
    assert rule.type == BindType.COMMAND
    assert rule.chat_type == ChatType.ALL


def test_registry_add_remove_and_persist(tmp_path):
    path = tmp_path / "binds.json"
    registry = RuleRegistry(path)
    assert registry.add("g1", "s1", Rule.create("heal", command="heal {PlayerName}")) == 1
    assert registry.add("g1", "s1", Rule.create("kit", entity="kit_pvp")) == 2

    saved = json.loads(path.read_text())
    assert [r["message"] for r in saved["g1"]["s1"]] == ["heal", "kit"]

    removed = registry.remove_at("g1", "s1", 0)
    assert removed.message == "heal"
    assert registry.triggers("g1", "s1") == ["kit"]

    with pytest.raises(InvalidIndex):
        registry.remove_at("g1", "s1", 1)
    with pytest.raises(InvalidIndex):
        registry.remove_at("g1", "s1", -1)


def test_registry_find_by_trigger_is_exact(tmp_path):
    registry = RuleRegistry(tmp_path / "binds.json")
    registry.add("g1", "s1", Rule.create("heal", command="heal {PlayerName}"))
    assert registry.find_by_trigger("g1", "s1", "heal") is not None
    assert registry.find_by_trigger("g1", "s1", "hea") is None
    assert registry.find_by_trigger("g1", "other", "heal") is None


def test_registry_load_skips_malformed_entries(tmp_path):
    path = tmp_path / "binds.json"
    path.write_text(
        json.dumps(
            {
                "g1": {
                    "s1": [
                        {"message": "heal", "command": "heal {PlayerName}", "cooldown": 0},
                        {"command": "missing message"},
                    ]
                }
            }
        )
    )
    registry = RuleRegistry(path)
    registry.load()
    assert registry.triggers("g1", "s1") == ["heal"]
    assert registry.has_rules("g1", "s1")
    assert not registry.has_rules("g1", "s2")


def test_registry_save_failure_keeps_memory(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    registry = RuleRegistry(blocker / "binds.json")
    registry.add("g1", "s1", Rule.create("heal", command="heal"))
    assert registry.save() is False
    assert registry.triggers("g1", "s1") == ["heal"]
