import os
import time
import logging

import requests

from models import User, Team, Player, DiscordBotConfig


DISCORD_API_BASE = "https://discord.com/api/v10"

logger = logging.getLogger(__name__)


class DiscordAPIError(Exception):
    pass


class DiscordClient:
    def __init__(self,
                 bot_token: str | None = None,
                 guild_id: str | None = None,
                 max_retries: int = 3,
                 sleep=time.sleep):
        self.bot_token = bot_token or os.environ.get("DISCORD_BOT_TOKEN", "")
        self.guild_id = guild_id or os.environ.get("DISCORD_GUILD_ID", "")
        self.max_retries = max_retries
        self._sleep = sleep

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bot {self.bot_token}",
            "Content-Type": "application/json",
        }

    def request(self, method: str, path: str) -> requests.Response:
        """
        Call the Discord API, retrying on rate limits, 5xx and network errors.
        - 429: wait Retry-After seconds (10s when absent), capped at 30s
        - 5xx: wait 5s per attempt, capped at 20s
        - network error: wait 5s per attempt
        Raises DiscordAPIError once every attempt is used up.
        """
        url = f"{DISCORD_API_BASE}{path}"
        last_error = None
        for attempt in range(1, self.max_retries + 1):
            try:
                logger.debug("[DISCORD] %s %s (attempt %s/%s)", method, url, attempt, self.max_retries)
                resp = requests.request(method, url, headers=self._headers(), timeout=30)
            except requests.RequestException as e:
                last_error = str(e)
                logger.warning("[DISCORD] request attempt %s/%s failed: %s", attempt, self.max_retries, e)
                if attempt < self.max_retries:
                    self._sleep(5 * attempt)
                continue

            if resp.status_code == 429:
                retry_after = resp.headers.get("retry-after")
                try:
                    wait = float(retry_after) if retry_after else 10.0
                except ValueError:
                    wait = 10.0
                last_error = "rate limited"
                logger.info("[DISCORD] rate limited, waiting %ss before retry %s/%s",
                            min(wait, 30), attempt, self.max_retries)
                if attempt < self.max_retries:
                    self._sleep(min(wait, 30))
                continue

            if resp.status_code >= 500:
                last_error = f"server error {resp.status_code}"
                logger.info("[DISCORD] server error %s, retry %s/%s", resp.status_code, attempt, self.max_retries)
                if attempt < self.max_retries:
                    self._sleep(min(5 * attempt, 20))
                continue

            return resp

        raise DiscordAPIError(f"Max retries exceeded. Last error: {last_error}")

    def get_guild(self) -> dict:
        resp = self.request("GET", f"/guilds/{self.guild_id}")
        if not resp.ok:
            raise DiscordAPIError(f"Bot connection test failed: {resp.status_code} - {resp.text}")
        return resp.json()

    def get_member_roles(self, discord_id: str) -> list | None:
        """Role ids held by the member, or None when they are not in the guild."""
        resp = self.request("GET", f"/guilds/{self.guild_id}/members/{discord_id}")
        if resp.status_code == 404:
            return None
        if not resp.ok:
            raise DiscordAPIError(f"Failed to fetch member roles: {resp.status_code} - {resp.text}")
        return resp.json().get("roles", [])

    def add_role(self, discord_id: str, role_id: str) -> bool:
        resp = self.request("PUT", f"/guilds/{self.guild_id}/members/{discord_id}/roles/{role_id}")
        return resp.ok

    def remove_role(self, discord_id: str, role_id: str) -> bool:
        resp = self.request("DELETE", f"/guilds/{self.guild_id}/members/{discord_id}/roles/{role_id}")
        return resp.ok


def get_bot_config():
    """Newest stored bot config, falling back to environment variables. None when unset."""
    config = DiscordBotConfig.query.order_by(DiscordBotConfig.created_at.desc(), DiscordBotConfig.id.desc()).first()
    if config:
        return {
            "guild_id": config.guild_id,
            "bot_token": config.bot_token,
            "registered_role_id": config.registered_role_id,
        }
    token = os.environ.get("DISCORD_BOT_TOKEN")
    guild = os.environ.get("DISCORD_GUILD_ID")
    if token and guild:
        return {
            "guild_id": guild,
            "bot_token": token,
            "registered_role_id": os.environ.get("DISCORD_REGISTERED_ROLE_ID"),
        }
    return None


def compute_role_changes(current_roles, team_role_id, all_team_role_ids, registered_role_id=None):
    """
    Work out which guild roles to add and remove for one member.
    - the registered role is always present
    - the current team's role is present
    - every other team role is removed
    """
    current = set(current_roles or [])
    to_add = []
    to_remove = []

    if registered_role_id and registered_role_id not in current:
        to_add.append(registered_role_id)
    if team_role_id and team_role_id not in current:
        to_add.append(team_role_id)

    for role_id in all_team_role_ids:
        if role_id and role_id != team_role_id and role_id in current:
            to_remove.append(role_id)

    return to_add, to_remove


def _team_role_for(user):
    player = Player.query.filter_by(user_id=user.id, status="active").first()
    if player and player.team:
        return player.team
    return None


def sync_user_roles(user, client: DiscordClient, registered_role_id=None, all_team_role_ids=None,
                    role_delay: float = 0):
    """Bring one member's Discord roles in line with their team. Returns a summary dict."""
    if not user.discord_id:
        return {"user_id": user.id, "status": "skipped", "reason": "no discord connection"}

    if all_team_role_ids is None:
        all_team_role_ids = [t.discord_role_id for t in
                             Team.query.filter(Team.discord_role_id.isnot(None)).all()]

    team = _team_role_for(user)
    current = client.get_member_roles(user.discord_id)
    if current is None:
        logger.info("[DISCORD] %s not in guild, skipping", user.gamer_tag_id)
        return {"user_id": user.id, "status": "skipped", "reason": "not in guild"}

    to_add, to_remove = compute_role_changes(
        current, team.discord_role_id if team else None, all_team_role_ids, registered_role_id,
    )

    failures = []
    for role_id in to_add:
        if not client.add_role(user.discord_id, role_id):
            failures.append(f"add {role_id}")
        if role_delay:
            client._sleep(role_delay)
    for role_id in to_remove:
        if not client.remove_role(user.discord_id, role_id):
            failures.append(f"remove {role_id}")
        if role_delay:
            client._sleep(role_delay)

    return {
        "user_id": user.id,
        "gamer_tag": user.gamer_tag_id,
        "team": team.name if team else None,
        "status": "failed" if failures else "synced",
        "added": to_add,
        "removed": to_remove,
        "errors": failures,
    }


def sync_user_roles_quietly(user):
    """Best-effort sync after a roster move; problems are logged, never raised."""
    if not user or not user.discord_id:
        return None
    config = get_bot_config()
    if not config:
        logger.info("[DISCORD] bot not configured, skipping role sync for %s", user.gamer_tag_id)
        return None
    client = DiscordClient(config["bot_token"], config["guild_id"])
    try:
        return sync_user_roles(user, client, config.get("registered_role_id"))
    except DiscordAPIError as e:
        logger.error("[DISCORD] role sync error for %s: %s", user.gamer_tag_id, e)
        return None


def sync_all_roles(client: DiscordClient = None, config=None, delay: float | None = None):
    """Sync every active user with a Discord id, pausing `delay` seconds between users."""
    config = config or get_bot_config()
    if not config:
        raise DiscordAPIError("Bot configuration not found")
    if client is None:
        client = DiscordClient(config["bot_token"], config["guild_id"])
    if delay is None:
        delay = float(os.environ.get("DISCORD_SYNC_DELAY_SECONDS", "15"))

    client.get_guild()

    users = User.query.filter(User.is_active.is_(True), User.discord_id.isnot(None)).order_by(User.id).all()
    team_role_ids = [t.discord_role_id for t in Team.query.filter(Team.discord_role_id.isnot(None)).all()]

    results = {"processed": len(users), "successful": 0, "failed": 0, "skipped": 0, "errors": [], "users": []}
    for index, user in enumerate(users):
        if index and delay:
            client._sleep(delay)
        try:
            summary = sync_user_roles(user, client, config.get("registered_role_id"), team_role_ids)
        except DiscordAPIError as e:
            results["failed"] += 1
            results["errors"].append({"user_id": user.id, "gamer_tag": user.gamer_tag_id, "error": str(e)})
            continue
        results["users"].append(summary)
        if summary["status"] == "synced":
            results["successful"] += 1
        elif summary["status"] == "skipped":
            results["skipped"] += 1
        else:
            results["failed"] += 1
            results["errors"].append({"user_id": user.id, "gamer_tag": user.gamer_tag_id,
                                      "error": ", ".join(summary["errors"])})
    return results
