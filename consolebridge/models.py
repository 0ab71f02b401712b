from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from peewee import (
    AutoField,
    BooleanField,
    CharField,
    DateTimeField,
    ForeignKeyField,
    IntegerField,
    Model,
    SqliteDatabase,
    TextField,
)


def utcnow_naive() -> datetime:
    """Return current UTC time without tzinfo for SQLite storage."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class GuildModels:
    db: SqliteDatabase
    Settings: type
    GameServer: type
    PlayerLink: type
    Category: type
    Location: type
    CategoryMember: type
    Weapon: type
    GunGameProgress: type
    Audit: type

    def close(self) -> None:
        if not self.db.is_closed():
            self.db.close()


def _create_guild_models(db: SqliteDatabase) -> GuildModels:
    class BaseModel(Model):
        created_at = DateTimeField(default=utcnow_naive)
        updated_at = DateTimeField(default=utcnow_naive)

        def save(self, *args, **kwargs):  # type: ignore[override]
            self.updated_at = utcnow_naive()
            return super().save(*args, **kwargs)

        class Meta:
            database = db

    class Settings(BaseModel):
        id = IntegerField(primary_key=True)
        autotp_enabled = BooleanField(default=False)
        link_role_id = IntegerField(null=True)

    class GameServer(BaseModel):
        server_id = CharField(primary_key=True)
        nickname = CharField(unique=True)

    class PlayerLink(BaseModel):
        discord_user_id = IntegerField(primary_key=True)
        gamertag = CharField()
        gamertag_key = CharField(unique=True)
        platform = CharField()
        linked_at = DateTimeField(default=utcnow_naive)

    class Category(BaseModel):
        id = AutoField()
        name = CharField(unique=True)
        bind = CharField()
        command = CharField(null=True)
        signup_message = CharField(null=True)
        exit_message = CharField(null=True)
        gungame_enabled = BooleanField(default=False)

    class Location(BaseModel):
        id = AutoField()
        category = ForeignKeyField(Category, backref="locations", on_delete="CASCADE")
        name = CharField()
        coords = CharField()

    # One row per player keeps AutoTP membership exclusive within the guild.
    class CategoryMember(BaseModel):
        player_name = CharField(primary_key=True)
        category = ForeignKeyField(Category, backref="members", on_delete="CASCADE")

    class Weapon(BaseModel):
        id = AutoField()
        position = IntegerField()
        weapon = CharField()
        kills = IntegerField()
        ammo = CharField(null=True)

    class GunGameProgress(BaseModel):
        player_name = CharField(primary_key=True)
        weapon_index = IntegerField(default=0)
        kills = IntegerField(default=0)

    class Audit(BaseModel):
        id = AutoField()
        actor_discord_id = IntegerField()
        action = CharField()
        payload = TextField(null=True)

    return GuildModels(
        db=db,
        Settings=Settings,
        GameServer=GameServer,
        PlayerLink=PlayerLink,
        Category=Category,
        Location=Location,
        CategoryMember=CategoryMember,
        Weapon=Weapon,
        GunGameProgress=GunGameProgress,
        Audit=Audit,
    )


def init_guild_db(path: str) -> GuildModels:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    db = SqliteDatabase(path, pragmas={"foreign_keys": 1})
    models = _create_guild_models(db)
    db.connect(reuse_if_open=True)
    db.create_tables(
        [
            models.Settings,
            models.GameServer,
            models.PlayerLink,
            models.Category,
            models.Location,
            models.CategoryMember,
            models.Weapon,
            models.GunGameProgress,
            models.Audit,
        ]
    )

    if models.Settings.select().where(models.Settings.id == 1).count() == 0:
        models.Settings.create(id=1)

    return models


def get_settings(models: GuildModels):
    return models.Settings.get_by_id(1)


def record_audit(
    models: GuildModels, actor_discord_id: int, action: str, payload: dict | None = None
):
    models.Audit.create(
        actor_discord_id=actor_discord_id,
        action=action,
        payload=json.dumps(payload) if payload else None,
    )
