from __future__ import annotations

import asyncio
import logging
from typing import Any, Literal, Optional

import discord
from discord import app_commands
from discord.ext import commands

from .bridge import ConsoleBridge
from .config import BotConfig, load_config
from .errors import BridgeError, ValidationError
from .names import format_cooldown
from .roles import DiscordRoleGate
from .rules import BindType, Rule
from .webhook import DiscordWebhookHandler

# Default to INFO until the configured level is applied at startup
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s"
)
LOGGER = logging.getLogger(__name__)

ChatTypeOption = Literal["ALL", "LOCAL", "TEAM", "SERVER"]
PlatformOption = Literal["ps4", "xboxone"]


def describe_rule(index: int, rule: Rule) -> str:
    kind = "spawn" if rule.type == BindType.SPAWN else "command"
    parts = [f"{index}. `{rule.message}` -> {kind} `{rule.action}`"]
    details = [f"chat {rule.chat_type.value}"]
    if rule.cooldown:
        details.append(f"cooldown {format_cooldown(rule.cooldown)}")
    if rule.role_id:
        details.append(f"role <@&{rule.role_id}>")
        if rule.remove_role:
            details.append("removes role")
    parts.append(f"({', '.join(details)})")
    return " ".join(parts)


def member_is_admin(member: Any) -> bool:
    perms = getattr(member, "guild_permissions", None)
    if perms is None:
        return False
    return bool(perms.administrator or perms.manage_guild)


class ConsoleBot(commands.Bot):
    def __init__(self, config: BotConfig):
        intents = discord.Intents.default()
        intents.members = True
        intents.guilds = True
        super().__init__(command_prefix="!", intents=intents)
        self.config = config
        self.role_gate = DiscordRoleGate(self)
        self.bridge = ConsoleBridge(config, self.role_gate)
        self.pump_task: asyncio.Task[None] | None = None
        self.error_webhook: DiscordWebhookHandler | None = None
        if config.error_webhook_url:
            self.error_webhook = DiscordWebhookHandler(config.error_webhook_url)

    async def setup_hook(self) -> None:
        if self.error_webhook:
            await self.error_webhook.start()
            logging.getLogger().addHandler(self.error_webhook)
        self.bridge.start()
        await self.tree.sync()
        if self.pump_task is None:
            self.pump_task = self.loop.create_task(self._queue_pump_loop())

    async def close(self) -> None:
        if self.pump_task:
            self.pump_task.cancel()
            try:
                await self.pump_task
            except asyncio.CancelledError:
                pass
        try:
            await self.bridge.close()
        except Exception as exc:
            LOGGER.exception("Failed closing console bridge: %s", exc)
        await super().close()
        if self.error_webhook:
            logging.getLogger().removeHandler(self.error_webhook)
            await self.error_webhook.close()

    async def on_ready(self):
        LOGGER.info("Bot ready as %s", self.user)

    async def _queue_pump_loop(self):
        interval = self.config.queue_interval_ms / 1000
        while not self.is_closed():
            try:
                self.bridge.pump_queues()
            except Exception as exc:
                LOGGER.exception("Queue pump failed: %s", exc)
            await asyncio.sleep(interval)


# Command registrations
async def setup_commands(bot: ConsoleBot):
    tree = bot.tree
    bridge = bot.bridge

    async def respond(interaction: discord.Interaction, message: str, ephemeral: bool = True):
        if interaction.response.is_done():
            await interaction.followup.send(message, ephemeral=ephemeral)
        else:
            await interaction.response.send_message(message, ephemeral=ephemeral)

    async def resolve_guild(interaction: discord.Interaction) -> Optional[str]:
        guild = interaction.guild
        if guild is None:
            await interaction.response.send_message(
                "Commands must be used inside a guild.", ephemeral=True
            )
            return None
        return str(guild.id)

    async def require_admin(interaction: discord.Interaction) -> Optional[str]:
        guild_id = await resolve_guild(interaction)
        if guild_id is None:
            return None
        if not member_is_admin(interaction.user):
            await interaction.response.send_message(
                "You do not have permission to use this command.", ephemeral=True
            )
            return None
        return guild_id

    @bot.listen("on_interaction")
    async def log_app_command(interaction: discord.Interaction):
        if interaction.type != discord.InteractionType.application_command:
            return
        cmd = interaction.command
        data = getattr(interaction, "namespace", None)
        try:
            payload = vars(data) if data else {}
        except TypeError:
            payload = str(data)
        guild = interaction.guild
        guild_label = f"{guild.name} ({guild.id})" if guild else "unknown-guild"
        LOGGER.info(
            "Slash command %s by %s in %s with options %s",
            cmd.qualified_name if cmd else "unknown",
            getattr(interaction.user, "id", "unknown"),
            guild_label,
            payload,
        )

    @tree.error
    async def on_app_command_error(
        interaction: discord.Interaction, error: app_commands.AppCommandError
    ):
        if isinstance(error, app_commands.CheckFailure):
            if not interaction.response.is_done():
                await interaction.response.send_message(
                    "You do not have permission to use this command.",
                    ephemeral=True,
                )
            return
        original = getattr(error, "original", error)
        if isinstance(original, BridgeError):
            LOGGER.warning("App command rejected: %s", original)
            message = f"Command failed: {original}"
        else:
            LOGGER.exception("App command error: %s", error)
            message = f"Command failed: {error}"
        try:
            await respond(interaction, message)
        except discord.HTTPException as exc:
            LOGGER.warning("Failed sending error response for command: %s", exc)

    # Servers

    @app_commands.default_permissions(manage_guild=True)
    @tree.command(name="server_add", description="Register a game server under a nickname")
    @app_commands.describe(nickname="Name used by other commands", server_id="Console server id")
    async def server_add(interaction: discord.Interaction, nickname: str, server_id: str):
        guild_id = await require_admin(interaction)
        if guild_id is None:
            return
        try:
            bridge.add_server(guild_id, interaction.user.id, nickname, server_id)
        except ValidationError as exc:
            await respond(interaction, str(exc))
            return
        await respond(interaction, f"Registered server `{nickname}` ({server_id}).", ephemeral=False)

    @app_commands.default_permissions(manage_guild=True)
    @tree.command(name="server_remove", description="Forget a game server and its binds")
    async def server_remove(interaction: discord.Interaction, server: str):
        guild_id = await require_admin(interaction)
        if guild_id is None:
            return
        try:
            removed = bridge.remove_server(guild_id, interaction.user.id, server)
        except ValidationError as exc:
            await respond(interaction, str(exc))
            return
        await respond(
            interaction, f"Removed server `{server}` ({removed} binds dropped).", ephemeral=False
        )

    @tree.command(name="servers", description="List registered game servers")
    async def servers(interaction: discord.Interaction):
        guild_id = await resolve_guild(interaction)
        if guild_id is None:
            return
        lines = [
            f"`{nickname}` ({server_id}) - {'connected' if connected else 'not connected'}"
            for nickname, server_id, connected in bridge.list_servers(guild_id)
        ]
        await respond(interaction, "\n".join(lines) or "No servers registered.")

    @app_commands.default_permissions(manage_guild=True)
    @tree.command(name="run", description="Run a console command on one or all servers")
    @app_commands.describe(server="Optional server nickname; all connected servers if omitted")
    async def run(interaction: discord.Interaction, command: str, server: Optional[str] = None):
        guild_id = await require_admin(interaction)
        if guild_id is None:
            return
        await interaction.response.defer(thinking=True)
        try:
            responses = await bridge.run_command(guild_id, command, server)
        except BridgeError as exc:
            await respond(interaction, str(exc))
            return
        lines = [f"Command: `{command}`"]
        lines.extend(f"**{name}**: {text or 'No response'}" for name, text in responses.items())
        await interaction.followup.send("\n".join(lines))

    # Binds

    @app_commands.default_permissions(manage_guild=True)
    @tree.command(name="bind_add", description="Add a chat-triggered bind to a server")
    @app_commands.describe(
        message="Trigger text matched anywhere in a chat line",
        command="Console command; {PlayerName} is replaced",
        entity="Entity spawned at the player's position",
        cooldown="Cooldown in minutes",
        role="Role required to use the bind",
        remove_role="Remove the role after the bind fires",
        cooldown_msg="Shown while on cooldown; {PlayerName} and {Cooldown} are replaced",
        claim_msg="Shown after the bind fires; {PlayerName} is replaced",
    )
    async def bind_add(
        interaction: discord.Interaction,
        server: str,
        message: str,
        command: Optional[str] = None,
        entity: Optional[str] = None,
        cooldown: int = 0,
        role: Optional[discord.Role] = None,
        remove_role: bool = False,
        cooldown_msg: Optional[str] = None,
        claim_msg: Optional[str] = None,
        chat_type: ChatTypeOption = "ALL",
    ):
        guild_id = await require_admin(interaction)
        if guild_id is None:
            return
        try:
            index, rule = bridge.add_bind(
                guild_id,
                interaction.user.id,
                server,
                message,
                command=command,
                entity=entity,
                cooldown_minutes=cooldown,
                role_id=role.id if role else None,
                remove_role=remove_role,
                cooldown_msg=cooldown_msg,
                claim_msg=claim_msg,
                chat_type=chat_type,
            )
        except ValidationError as exc:
            await respond(interaction, str(exc))
            return
        await respond(interaction, f"Bind added to `{server}`:\n{describe_rule(index, rule)}", ephemeral=False)

    @app_commands.default_permissions(manage_guild=True)
    @tree.command(name="bind_remove", description="Remove a bind by its list number")
    async def bind_remove(interaction: discord.Interaction, server: str, index: int):
        guild_id = await require_admin(interaction)
        if guild_id is None:
            return
        try:
            removed = bridge.remove_bind(guild_id, interaction.user.id, server, index)
        except ValidationError as exc:
            await respond(interaction, str(exc))
            return
        await respond(interaction, f"Removed bind `{removed.message}` from `{server}`.", ephemeral=False)

    @app_commands.default_permissions(manage_guild=True)
    @tree.command(name="bind_list", description="List the binds of a server")
    async def bind_list(interaction: discord.Interaction, server: str):
        guild_id = await require_admin(interaction)
        if guild_id is None:
            return
        try:
            rules = bridge.list_binds(guild_id, server)
        except ValidationError as exc:
            await respond(interaction, str(exc))
            return
        lines = [describe_rule(i, rule) for i, rule in enumerate(rules, start=1)]
        await respond(interaction, "\n".join(lines) or f"No binds configured for `{server}`.")

    @app_commands.default_permissions(manage_guild=True)
    @tree.command(name="resetcooldown", description="Reset bind cooldowns for a player")
    @app_commands.describe(bind="Trigger of one bind; all binds of the server if omitted")
    async def resetcooldown(
        interaction: discord.Interaction, server: str, player: str, bind: Optional[str] = None
    ):
        guild_id = await require_admin(interaction)
        if guild_id is None:
            return
        try:
            count = bridge.reset_cooldown(guild_id, interaction.user.id, server, player, bind)
        except ValidationError as exc:
            await respond(interaction, str(exc))
            return
        if bind is not None and count == 0:
            await respond(interaction, f"Bind `{bind}` not found on `{server}`.")
            return
        plural = "" if count == 1 else "s"
        await respond(interaction, f"Reset {count} cooldown{plural} for {player} on `{server}`.")

    # Links

    @tree.command(name="link", description="Link your Discord account to your gamertag")
    async def link(interaction: discord.Interaction, gamertag: str, console: PlatformOption):
        guild_id = await resolve_guild(interaction)
        if guild_id is None:
            return
        try:
            await bridge.link(guild_id, interaction.user.id, gamertag, console)
        except ValidationError as exc:
            await respond(interaction, str(exc))
            return
        await respond(interaction, f"Linked to gamertag `{gamertag.strip()}` ({console}).")

    @app_commands.default_permissions(manage_guild=True)
    @tree.command(name="unlink", description="Remove a user's gamertag link")
    async def unlink(interaction: discord.Interaction, user: discord.User):
        guild_id = await require_admin(interaction)
        if guild_id is None:
            return
        try:
            removed = await bridge.unlink(guild_id, interaction.user.id, user.id)
        except ValidationError as exc:
            await respond(interaction, str(exc))
            return
        await respond(interaction, f"Unlinked <@{user.id}> from `{removed.gamertag}`.")

    @app_commands.default_permissions(manage_guild=True)
    @tree.command(name="linkrole", description="Role granted to every linked user")
    async def linkrole(interaction: discord.Interaction, role: discord.Role):
        guild_id = await require_admin(interaction)
        if guild_id is None:
            return
        await interaction.response.defer(ephemeral=True, thinking=True)
        granted = await bridge.set_link_role(guild_id, interaction.user.id, role.id)
        await respond(interaction, f"Link role set to <@&{role.id}>; granted to {granted} linked users.")

    # AutoTP

    @app_commands.default_permissions(manage_guild=True)
    @tree.command(name="autotp", description="Enable or disable AutoTP for this guild")
    async def autotp(interaction: discord.Interaction, enabled: bool):
        guild_id = await require_admin(interaction)
        if guild_id is None:
            return
        bridge.set_autotp_enabled(guild_id, interaction.user.id, enabled)
        await respond(
            interaction, f"AutoTP has been {'enabled' if enabled else 'disabled'}.", ephemeral=False
        )

    @app_commands.default_permissions(manage_guild=True)
    @tree.command(name="category_add", description="Create an AutoTP category")
    @app_commands.describe(
        bind="Chat text that toggles membership",
        command="Run after each teleport; {PlayerName} is replaced",
    )
    async def category_add(
        interaction: discord.Interaction, name: str, bind: str, command: Optional[str] = None
    ):
        guild_id = await require_admin(interaction)
        if guild_id is None:
            return
        try:
            bridge.add_category(guild_id, interaction.user.id, name, bind, command)
        except ValidationError as exc:
            await respond(interaction, str(exc))
            return
        await respond(interaction, f'Created category "{name}" with bind `{bind}`.', ephemeral=False)

    @app_commands.default_permissions(manage_guild=True)
    @tree.command(name="category_remove", description="Delete an AutoTP category")
    async def category_remove(interaction: discord.Interaction, name: str):
        guild_id = await require_admin(interaction)
        if guild_id is None:
            return
        try:
            bridge.remove_category(guild_id, interaction.user.id, name)
        except ValidationError as exc:
            await respond(interaction, str(exc))
            return
        await respond(interaction, f'Removed category "{name}".', ephemeral=False)

    @app_commands.default_permissions(manage_guild=True)
    @tree.command(name="location_add", description="Add a teleport location to a category")
    @app_commands.describe(coordinates="x,y,z or (x,y,z)")
    async def location_add(
        interaction: discord.Interaction, category: str, name: str, coordinates: str
    ):
        guild_id = await require_admin(interaction)
        if guild_id is None:
            return
        try:
            location = bridge.add_location(guild_id, interaction.user.id, category, name, coordinates)
        except ValidationError as exc:
            await respond(interaction, str(exc))
            return
        await respond(
            interaction,
            f'Added location "{location.name}" ({location.coords}) to "{category}".',
            ephemeral=False,
        )

    @app_commands.default_permissions(manage_guild=True)
    @tree.command(name="location_remove", description="Remove a teleport location")
    async def location_remove(interaction: discord.Interaction, category: str, name: str):
        guild_id = await require_admin(interaction)
        if guild_id is None:
            return
        try:
            bridge.remove_location(guild_id, interaction.user.id, category, name)
        except ValidationError as exc:
            await respond(interaction, str(exc))
            return
        await respond(interaction, f'Removed location "{name}".', ephemeral=False)

    @tree.command(name="categories", description="List AutoTP categories")
    async def categories(interaction: discord.Interaction):
        guild_id = await resolve_guild(interaction)
        if guild_id is None:
            return
        lines = []
        for category in bridge.list_categories(guild_id):
            locations = ", ".join(f"{loc.name} ({loc.coords})" for loc in category.locations)
            lines.append(
                f"**{category.name}** bind `{category.bind}` - "
                f"{len(category.members)} active, GunGame {'on' if category.gungame_enabled else 'off'}"
                f"\n  Locations: {locations or 'none'}"
            )
        await respond(interaction, "\n".join(lines) or "No categories configured.")

    @app_commands.default_permissions(manage_guild=True)
    @tree.command(name="tpmessage", description="Set signup and exit messages for a category")
    @app_commands.describe(
        signup="Shown on joining; {PlayerName} and {Category} are replaced",
        exit="Shown on leaving; {PlayerName} and {Category} are replaced",
    )
    async def tpmessage(
        interaction: discord.Interaction,
        category: str,
        signup: Optional[str] = None,
        exit: Optional[str] = None,
    ):
        guild_id = await require_admin(interaction)
        if guild_id is None:
            return
        try:
            bridge.set_category_messages(guild_id, interaction.user.id, category, signup, exit)
        except ValidationError as exc:
            await respond(interaction, str(exc))
            return
        await respond(interaction, f'Updated messages for "{category}".')

    # GunGame

    @app_commands.default_permissions(manage_guild=True)
    @tree.command(name="gungame_toggle", description="Enable or disable GunGame for a category")
    async def gungame_toggle(interaction: discord.Interaction, category: str, enabled: bool):
        guild_id = await require_admin(interaction)
        if guild_id is None:
            return
        try:
            bridge.set_gungame_enabled(guild_id, interaction.user.id, category, enabled)
        except ValidationError as exc:
            await respond(interaction, str(exc))
            return
        await respond(
            interaction,
            f'Gun Game has been {"enabled" if enabled else "disabled"} for category "{category}".',
            ephemeral=False,
        )

    @app_commands.default_permissions(manage_guild=True)
    @tree.command(name="gungame_weapon", description="Append a weapon to the GunGame ladder")
    @app_commands.describe(kills="Kills needed to advance", ammo='Optional "<type> <amount>"')
    async def gungame_weapon(
        interaction: discord.Interaction, name: str, kills: int, ammo: Optional[str] = None
    ):
        guild_id = await require_admin(interaction)
        if guild_id is None:
            return
        try:
            weapon = bridge.add_weapon(guild_id, interaction.user.id, name, kills, ammo)
        except ValidationError as exc:
            await respond(interaction, str(exc))
            return
        await respond(
            interaction,
            f"Added weapon `{weapon.weapon}` ({weapon.kills} kills, ammo {weapon.ammo or 'none'}).",
            ephemeral=False,
        )

    @app_commands.default_permissions(manage_guild=True)
    @tree.command(name="gungame_remove", description="Remove a weapon by its list number")
    async def gungame_remove(interaction: discord.Interaction, index: int):
        guild_id = await require_admin(interaction)
        if guild_id is None:
            return
        try:
            removed = bridge.remove_weapon(guild_id, interaction.user.id, index)
        except ValidationError as exc:
            await respond(interaction, str(exc))
            return
        await respond(
            interaction,
            f"Removed weapon `{removed.weapon}` ({removed.kills} kills). "
            "Players on this or later weapons have had their progress reset.",
            ephemeral=False,
        )

    @tree.command(name="gungame_list", description="Show GunGame categories and weapons")
    async def gungame_list(interaction: discord.Interaction):
        guild_id = await resolve_guild(interaction)
        if guild_id is None:
            return
        lines = [
            f"{category.name}: {'enabled' if category.gungame_enabled else 'disabled'}"
            for category in bridge.list_categories(guild_id)
        ] or ["No categories configured"]
        weapons = bridge.list_weapons(guild_id)
        lines.append("Weapons:")
        lines.extend(
            f"{i}. {w.weapon} - {w.kills} kills" + (f" (ammo {w.ammo})" if w.ammo else "")
            for i, w in enumerate(weapons, start=1)
        )
        if not weapons:
            lines.append("No weapons configured")
        await respond(interaction, "\n".join(lines))

    @app_commands.default_permissions(manage_guild=True)
    @tree.command(name="gungame_reset", description="Clear every player's GunGame progress")
    async def gungame_reset(interaction: discord.Interaction):
        guild_id = await require_admin(interaction)
        if guild_id is None:
            return
        cleared = bridge.reset_gungame(guild_id, interaction.user.id)
        await respond(interaction, f"Gun Game progress reset ({cleared} players).", ephemeral=False)

    @app_commands.default_permissions(manage_guild=True)
    @tree.command(name="audit", description="Show recent audit events")
    async def audit(interaction: discord.Interaction, page: int = 1):
        guild_id = await require_admin(interaction)
        if guild_id is None:
            return
        models = bridge.guild(guild_id)
        page = max(1, page)
        query = models.Audit.select().order_by(models.Audit.id.desc()).paginate(page, 20)
        lines = [
            f"{row.id}: actor={row.actor_discord_id} action={row.action} payload={row.payload}"
            for row in query
        ]
        await respond(interaction, "\n".join(lines) or "No audit entries")


async def main():
    bot_config = load_config()
    logging.getLogger().setLevel(bot_config.log_level)
    LOGGER.setLevel(bot_config.log_level)
    bot = ConsoleBot(bot_config)
    await setup_commands(bot)
    async with bot:
        await bot.start(bot_config.token)


if __name__ == "__main__":
    asyncio.run(main())
