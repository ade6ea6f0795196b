import os
import time
import logging
from datetime import datetime, timedelta, timezone

import requests


EA_API_BASE = "https://proclubs.ea.com/api/nhl"
REGULATION_SECONDS = 3600

logger = logging.getLogger(__name__)


class EAAPIError(Exception):
    pass


class EAClient:
    def __init__(self, platform: str | None = None, max_retries: int = 3, sleep=time.sleep):
        self.platform = platform or os.environ.get("EA_PLATFORM", "common-gen5")
        self.max_retries = max_retries
        self._sleep = sleep

    def _headers(self) -> dict:
        return {
            "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
                          "(KHTML, like Gecko) Chrome/124.0 Safari/537.36",
            "Accept": "application/json",
            "Cache-Control": "no-cache",
        }

    def club_matches(self, club_id: str, match_type: str = "club_private") -> list:
        """
        Recent matches for one club.
        Retries up to max_retries times (2s, 4s between attempts); rate limiting
        and non-JSON bodies count as failures. Raises EAAPIError when all fail.
        """
        url = f"{EA_API_BASE}/clubs/matches"
        params = {"matchType": match_type, "platform": self.platform, "clubIds": club_id}
        last_error = None
        for attempt in range(1, self.max_retries + 1):
            try:
                logger.info("[EA] fetching matches for club %s (attempt %s)", club_id, attempt)
                resp = requests.get(url, params=params, headers=self._headers(), timeout=20)
                if resp.status_code == 429:
                    raise EAAPIError("Rate limited: Too Many Requests from EA API. Please try again later.")
                if not resp.ok:
                    raise EAAPIError(f"HTTP error! status: {resp.status_code} {resp.reason}")
                content_type = resp.headers.get("content-type", "")
                if "application/json" not in content_type:
                    raise EAAPIError(f"Expected JSON response but got: {content_type or 'unknown content type'}")
                data = resp.json()
                return data if isinstance(data, list) else []
            except (requests.RequestException, EAAPIError, ValueError) as e:
                last_error = e
                logger.warning("[EA] attempt %s/%s for club %s failed: %s", attempt, self.max_retries, club_id, e)
                if attempt < self.max_retries:
                    self._sleep(2 * attempt)
        raise EAAPIError(f"Failed to fetch matches for club {club_id}: {last_error}")


def match_involves_club(match: dict, club_id) -> bool:
    clubs = (match or {}).get("clubs") or {}
    target = str(club_id)
    if target in {str(k) for k in clubs.keys()}:
        return True
    for club in clubs.values():
        if not isinstance(club, dict):
            continue
        details = club.get("details") or {}
        if target in (str(club.get("clubId")), str(club.get("id")), str(details.get("clubId"))):
            return True
    return False


def recent_matches(client: EAClient, home_club_id: str, away_club_id: str | None = None,
                   days: int = 14, limit: int = 10, now=None) -> list:
    """Matches from the last `days` days, newest first, de-duplicated by matchId.

    With two club ids only games between those clubs are returned.
    """
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    cutoff = (now - timedelta(days=days)).timestamp()

    seen = set()
    found = []
    for club_id, other_id in ((home_club_id, away_club_id), (away_club_id, home_club_id)):
        if not club_id:
            continue
        for match in client.club_matches(club_id):
            match_id = str(match.get("matchId"))
            if match_id in seen:
                continue
            if (match.get("timestamp") or 0) < cutoff:
                continue
            if other_id and not match_involves_club(match, other_id):
                continue
            seen.add(match_id)
            found.append(match)
        if not away_club_id:
            break

    found.sort(key=lambda m: m.get("timestamp") or 0, reverse=True)
    return found[:limit]


def extract_scores(ea_match: dict, home_club_id, away_club_id):
    """Return (home_score, away_score, went_to_overtime) for a league match from EA data."""
    clubs = {str(k): v for k, v in (ea_match.get("clubs") or {}).items()}
    home = clubs.get(str(home_club_id))
    away = clubs.get(str(away_club_id))
    if home is None or away is None:
        raise EAAPIError("EA match does not involve both clubs")

    home_score = int(home.get("score", home.get("goals", 0)) or 0)
    away_score = int(away.get("score", away.get("goals", 0)) or 0)

    longest_toi = 0
    for roster in (ea_match.get("players") or {}).values():
        for player in (roster or {}).values():
            try:
                longest_toi = max(longest_toi, int(player.get("toiseconds") or 0))
            except (TypeError, ValueError):
                continue
    return home_score, away_score, longest_toi > REGULATION_SECONDS
