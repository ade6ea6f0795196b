import os
import secrets
from collections import defaultdict
from datetime import datetime, date, timedelta

from sqlalchemy import func, or_

from models import (
    db, User, Season, Team, Player, Match, PlayerBid, TransferOffer, PlayerTransfer,
    InjuryReserve, GameAvailability, Notification, AuditLog, SystemSetting,
    VerificationToken, VerificationLog,
)

# League rules
SALARY_CAP = 30_000_000
MIN_BID_INCREMENT = 250_000
DEFAULT_PLAYER_SALARY = 750_000
ROSTER_LIMIT = 15
DEFAULT_BIDDING_DURATION = 14_400  # seconds
TRANSFER_OFFER_DAYS = 7
VERIFICATION_TOKEN_HOURS = 24


class LeagueRuleError(Exception):
    """A request broke a league rule; carries the HTTP status to answer with."""

    def __init__(self, message, status_code=400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


# ============================================================================
# ROLES
# ============================================================================

ROLE_HIERARCHY = {
    "Admin": [],
    "SuperAdmin": ["Admin"],
    "Owner": ["TeamManager"],
    "GM": ["TeamManager"],
    "AGM": ["TeamManager"],
    "TeamManager": [],
    "Coach": ["TeamManager"],
    "Assistant Coach": ["TeamManager"],
    "General Manager": ["TeamManager", "GM"],
    "Assistant General Manager": ["TeamManager", "AGM"],
    "Player": [],
    "User": [],
}

NORMALIZED_ROLES = {
    "admin": "Admin",
    "superadmin": "SuperAdmin",
    "owner": "Owner",
    "gm": "GM",
    "agm": "AGM",
    "coach": "Coach",
    "assistant coach": "Assistant Coach",
    "teammanager": "TeamManager",
    "player": "Player",
    "user": "User",
    "general manager": "General Manager",
    "assistant general manager": "Assistant General Manager",
    "manager": "TeamManager",
    "team owner": "Owner",
    "team manager": "TeamManager",
}


def normalize_role(role: str) -> str:
    """Map a stored role string onto its canonical name.

    Unknown roles are returned unchanged; empty roles become "User".
    """
    if not role:
        return "User"
    return NORMALIZED_ROLES.get(role.lower().strip(), role)


def role_has_permission(role: str, required_role: str) -> bool:
    """True if `role` is `required_role` or inherits it through ROLE_HIERARCHY."""
    if not role or not required_role:
        return False

    normalized = normalize_role(role)
    required = normalize_role(required_role)

    # Players never manage a team, whatever else is stored for them
    if normalized == "Player" and required == "TeamManager":
        return False

    if normalized == required:
        return True

    inherited = ROLE_HIERARCHY.get(normalized, [])
    if required in inherited:
        return True
    return any(role_has_permission(parent, required) for parent in inherited)


def user_is_admin(user) -> bool:
    if not user:
        return False
    return any(role_has_permission(r, "Admin") for r in user.role_names)


def managed_team_ids(user) -> list:
    """Teams the user may manage: the team they play on, if any of their roles is a manager role."""
    if not user or not user.player or not user.player.team_id:
        return []
    roles = list(user.role_names)
    if user.player.role:
        roles.append(user.player.role)
    if any(role_has_permission(r, "TeamManager") for r in roles):
        return [user.player.team_id]
    return []


def can_manage_team(user, team_id) -> bool:
    return user_is_admin(user) or team_id in managed_team_ids(user)


def team_manager_user_ids(team_id) -> list:
    players = Player.query.filter_by(team_id=team_id, status="active").all()
    return [p.user_id for p in players if p.user and team_id in managed_team_ids(p.user)]


# ============================================================================
# SYSTEM SETTINGS
# ============================================================================

def get_setting(key, default=None):
    setting = SystemSetting.query.filter_by(key=key).first()
    if setting is None or setting.value is None:
        return default
    return setting.value


def set_setting(key, value, user_id=None):
    setting = SystemSetting.query.filter_by(key=key).first()
    if not setting:
        setting = SystemSetting(key=key)
        db.session.add(setting)
    setting.value = value
    setting.updated_by = user_id
    setting.updated_at = datetime.utcnow()
    return setting


# ============================================================================
# DATES
# ============================================================================

def parse_date(value) -> date:
    """Parse 'YYYY-MM-DD' (or an ISO datetime) into a date. Raises ValueError."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not value:
        raise ValueError("Date is required")
    text = str(value).strip()
    if "T" in text or " " in text:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    return date.fromisoformat(text)


def parse_datetime(value) -> datetime:
    if isinstance(value, datetime):
        return value
    if not value:
        raise ValueError("Datetime is required")
    parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    # Stored naive in UTC
    if parsed.tzinfo is not None:
        parsed = parsed.replace(tzinfo=None) - (parsed.utcoffset() or timedelta(0))
    return parsed


def ranges_overlap(start_a, end_a, start_b, end_b) -> bool:
    """Closed date ranges [start_a, end_a] and [start_b, end_b] share at least one day."""
    return start_a <= end_b and end_a >= start_b


# ============================================================================
# STANDINGS
# ============================================================================

NO_CONFERENCE = {
    "id": None,
    "name": "No Conference",
    "color": "#6B7280",
    "description": "Teams not assigned to any conference",
}


def _standings_sort_key(row):
    return (-row["points"], -row["wins"], -row["goal_differential"], row["name"])


def calculate_standings(teams, matches):
    """
    Build the standings table from completed matches.

    - Win: 2 points
    - Loss in overtime or shootout (OTL): 1 point
    - Regulation loss: 0 points
    - Level scores on a completed match count as an OTL for both sides

    Sorted by points, then wins, then goal differential.
    """
    rows = {}
    for team in teams:
        rows[team.id] = {
            "id": team.id,
            "name": team.name,
            "logo_url": team.logo_url,
            "conference_id": team.conference_id,
            "conference": team.conference.name if team.conference else NO_CONFERENCE["name"],
            "conference_color": team.conference.color if team.conference else NO_CONFERENCE["color"],
            "wins": 0,
            "losses": 0,
            "otl": 0,
            "goals_for": 0,
            "goals_against": 0,
        }

    for match in matches:
        if match.status != "completed":
            continue
        home = rows.get(match.home_team_id)
        away = rows.get(match.away_team_id)
        home_score = match.home_score or 0
        away_score = match.away_score or 0
        extra_time = bool(match.has_overtime or match.has_shootout)

        if home:
            home["goals_for"] += home_score
            home["goals_against"] += away_score
        if away:
            away["goals_for"] += away_score
            away["goals_against"] += home_score

        if home_score == away_score:
            for row in (home, away):
                if row:
                    row["otl"] += 1
            continue

        winner, loser = (home, away) if home_score > away_score else (away, home)
        if winner:
            winner["wins"] += 1
        if loser:
            if extra_time:
                loser["otl"] += 1
            else:
                loser["losses"] += 1

    standings = []
    for row in rows.values():
        row["games_played"] = row["wins"] + row["losses"] + row["otl"]
        row["points"] = row["wins"] * 2 + row["otl"]
        row["goal_differential"] = row["goals_for"] - row["goals_against"]
        standings.append(row)

    standings.sort(key=_standings_sort_key)
    return standings


def group_standings_by_conference(standings, conferences):
    by_id = {c.id: c for c in conferences}
    grouped = {}
    for row in standings:
        conference = by_id.get(row["conference_id"])
        name = conference.name if conference else NO_CONFERENCE["name"]
        if name not in grouped:
            grouped[name] = {
                "conference": conference.to_dict() if conference else dict(NO_CONFERENCE),
                "teams": [],
            }
        grouped[name]["teams"].append(row)
    # Rows arrive sorted, so each conference list is sorted too
    return grouped


def active_season():
    return Season.query.filter_by(is_active=True).order_by(Season.id.desc()).first()


def season_standings(season_id=None):
    """Standings for the given season, or the active one. Returns (season, standings)."""
    if season_id:
        season = Season.query.get(season_id)
        if season is None:
            raise LeagueRuleError("Season not found", 404)
    else:
        season = active_season()
    matches = Match.query.filter_by(status="completed")
    if season:
        matches = matches.filter_by(season_id=season.id)
    teams = Team.query.filter_by(is_active=True).all()
    return season, calculate_standings(teams, matches.all())


def sync_team_standings(season_id=None):
    """Copy computed standings onto the cached team columns; the caller commits."""
    season, standings = season_standings(season_id)
    for row in standings:
        team = Team.query.get(row["id"])
        team.wins = row["wins"]
        team.losses = row["losses"]
        team.otl = row["otl"]
        team.points = row["points"]
        team.goals_for = row["goals_for"]
        team.goals_against = row["goals_against"]
    return season, standings


# ============================================================================
# AUDIT LOG
# ============================================================================

def record_audit(action, table_name, record_id=None, old_data=None, new_data=None,
                 user_id=None, ip_address=None):
    """Stage an audit entry in the current session; the caller commits."""
    entry = AuditLog(
        action=action,
        table_name=table_name,
        record_id=str(record_id) if record_id is not None else None,
        old_data=old_data,
        new_data=new_data,
        user_id=user_id,
        ip_address=ip_address,
        created_at=datetime.utcnow(),
    )
    db.session.add(entry)
    return entry


def search_audit_logs(search_text=None, action=None, table_name=None,
                      start=None, end=None, limit=20, offset=0):
    query = AuditLog.query
    if action:
        query = query.filter(AuditLog.action == action)
    if table_name:
        query = query.filter(AuditLog.table_name == table_name)
    if start:
        query = query.filter(AuditLog.created_at >= start)
    if end:
        query = query.filter(AuditLog.created_at <= end)
    if search_text:
        pattern = f"%{search_text}%"
        query = query.filter(or_(
            AuditLog.table_name.ilike(pattern),
            AuditLog.action.ilike(pattern),
            AuditLog.record_id.ilike(pattern),
        ))

    total = query.count()
    rows = query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).offset(offset).limit(limit).all()
    return rows, total


# ============================================================================
# NOTIFICATIONS / EMAIL
# ============================================================================

def notify_user(user_id, title, message, link=None):
    notification = Notification(user_id=user_id, title=title, message=message, link=link)
    db.session.add(notification)
    return notification


def send_email_notification(to_email: str, subject: str, body: str) -> bool:
    """
    Send an email notification.

    Args:
        to_email: Recipient email address
        subject: Email subject
        body: Email body (plain text)

    Returns:
        True if email sent successfully, False otherwise
    """
    import smtplib
    import logging
    from email.mime.text import MIMEText
    from email.mime.multipart import MIMEMultipart

    logger = logging.getLogger(__name__)

    if not to_email:
        return False

    # Testing mode: redirect all emails to the test inbox
    testing_mode = os.environ.get("TESTING_MODE", "false").lower() == "true"
    test_inbox = os.environ.get("TEST_EMAIL")
    if testing_mode and test_inbox:
        logger.info("[EMAIL TEST MODE] Redirecting email from %s to %s", to_email, test_inbox)
        to_email = test_inbox

    smtp_server = os.environ.get("SMTP_SERVER")
    smtp_port = int(os.environ.get("SMTP_PORT", "587"))
    smtp_username = os.environ.get("SMTP_USERNAME")
    smtp_password = os.environ.get("SMTP_PASSWORD")
    smtp_from = os.environ.get("SMTP_FROM_EMAIL", smtp_username)

    if not all([smtp_server, smtp_username, smtp_password]):
        logger.warning("[EMAIL] SMTP not configured, skipping email to %s", to_email)
        return False

    try:
        msg = MIMEMultipart()
        msg['From'] = smtp_from
        msg['To'] = to_email
        msg['Subject'] = subject
        msg.attach(MIMEText(body, 'plain'))

        with smtplib.SMTP(smtp_server, smtp_port) as server:
            server.starttls()
            server.login(smtp_username, smtp_password)
            server.send_message(msg)

        logger.info("[EMAIL] Successfully sent to %s: %s", to_email, subject)
        return True

    except (smtplib.SMTPException, OSError) as e:
        logger.error("[EMAIL ERROR] Failed to send to %s: %s", to_email, e)
        return False


# ============================================================================
# EMAIL VERIFICATION
# ============================================================================

def create_verification_token(user, now=None):
    now = now or datetime.utcnow()
    token = VerificationToken(
        user_id=user.id,
        email=user.email,
        token=secrets.token_hex(32),
        expires_at=now + timedelta(hours=VERIFICATION_TOKEN_HOURS),
    )
    db.session.add(token)
    return token


def build_verification_email(site_url: str, token: str):
    verification_url = f"{site_url.rstrip('/')}/verify/{token}"
    subject = "Verify your email address"
    body = f"""Hi!

Thanks for registering with the league. Confirm your email address by opening the link below:

{verification_url}

This link will expire in {VERIFICATION_TOKEN_HOURS} hours.
If you did not create an account, you can safely ignore this email.
"""
    return subject, body, verification_url


def send_verification_email(user, site_url):
    """Create a token, mail it and log the outcome. Returns (sent, verification_url)."""
    token = create_verification_token(user)
    subject, body, url = build_verification_email(site_url, token.token)
    sent = send_email_notification(user.email, subject, body)
    db.session.add(VerificationLog(
        user_id=user.id,
        email=user.email,
        status="email_sent" if sent else "email_failed",
        details="Verification email sent" if sent else "Email send failed",
    ))
    return sent, url


def consume_verification_token(token_value, now=None):
    """Mark the token used and the user verified. Raises LeagueRuleError on bad tokens."""
    now = now or datetime.utcnow()
    token = VerificationToken.query.filter_by(token=token_value).first()
    if not token:
        raise LeagueRuleError("Invalid or expired token", 400)
    if token.used_at:
        raise LeagueRuleError("Token has already been used", 400)
    if token.expires_at < now:
        raise LeagueRuleError("Token has expired", 400)

    user = User.query.filter(func.lower(User.email) == token.email.lower()).first()
    if not user:
        raise LeagueRuleError("User not found", 400)

    token.used_at = now
    user.email_verified = True
    db.session.add(VerificationLog(user_id=user.id, email=user.email, status="verified",
                                   details="Verified by email link"))
    return user


# ============================================================================
# INJURY RESERVE
# ============================================================================

def find_overlapping_reserves(user_id, team_id, start, end, exclude_id=None):
    query = InjuryReserve.query.filter(
        InjuryReserve.user_id == user_id,
        InjuryReserve.team_id == team_id,
        InjuryReserve.status == "active",
        InjuryReserve.week_start_date <= end,
        InjuryReserve.week_end_date >= start,
    )
    if exclude_id is not None:
        query = query.filter(InjuryReserve.id != exclude_id)
    return query.all()


def _team_matches_between(team_id, start, end):
    window_start = datetime.combine(start, datetime.min.time())
    window_end = datetime.combine(end, datetime.max.time())
    return Match.query.filter(
        or_(Match.home_team_id == team_id, Match.away_team_id == team_id),
        Match.match_date >= window_start,
        Match.match_date <= window_end,
    ).all()


def mark_injury_availability(reserve):
    """Flag the player as injury_reserve for every team match inside the reserve window."""
    count = 0
    for match in _team_matches_between(reserve.team_id, reserve.week_start_date, reserve.week_end_date):
        record = GameAvailability.query.filter_by(match_id=match.id, user_id=reserve.user_id).first()
        if record:
            record.status = "injury_reserve"
        else:
            db.session.add(GameAvailability(match_id=match.id, user_id=reserve.user_id,
                                            status="injury_reserve"))
        count += 1
    return count


def clear_injury_availability(user_id, team_id, start, end):
    match_ids = [m.id for m in _team_matches_between(team_id, start, end)]
    if not match_ids:
        return 0
    return GameAvailability.query.filter(
        GameAvailability.user_id == user_id,
        GameAvailability.status == "injury_reserve",
        GameAvailability.match_id.in_(match_ids),
    ).delete(synchronize_session=False)


# ============================================================================
# BIDDING
# ============================================================================

def highest_active_bid(player_id):
    return PlayerBid.query.filter(
        PlayerBid.player_id == player_id,
        PlayerBid.status == "Active",
        PlayerBid.finalized.is_(False),
    ).order_by(PlayerBid.bid_amount.desc(), PlayerBid.created_at.asc(), PlayerBid.id.asc()).first()


def minimum_bid(player, current_bid=None) -> int:
    current_amount = current_bid.bid_amount if current_bid else 0
    return max(current_amount + MIN_BID_INCREMENT, player.salary or DEFAULT_PLAYER_SALARY)


def team_payroll(team_id) -> int:
    total = db.session.query(func.coalesce(func.sum(Player.salary), 0)).filter(
        Player.team_id == team_id,
        Player.status == "active",
    ).scalar()
    return int(total or 0)


def roster_size(team_id) -> int:
    return Player.query.filter_by(team_id=team_id, status="active").count()


def leading_bids(team_id, exclude_player_id=None):
    """Active bids where this team currently holds the top offer."""
    leading = []
    bids = PlayerBid.query.filter(
        PlayerBid.team_id == team_id,
        PlayerBid.status == "Active",
        PlayerBid.finalized.is_(False),
    ).all()
    for bid in bids:
        if bid.player_id == exclude_player_id:
            continue
        top = highest_active_bid(bid.player_id)
        if top and top.id == bid.id:
            leading.append(bid)
    return leading


def team_cap(team) -> int:
    return team.salary_cap or SALARY_CAP


def place_bid(player, team, amount, user_id=None, now=None):
    """
    Validate and stage a free-agent bid.

    The current top bid is read twice, once for validation and again just
    before insert; a change in between means another team bid first.
    """
    now = now or datetime.utcnow()

    if not get_setting("bidding_enabled", False):
        raise LeagueRuleError("Bidding is currently disabled by league administrators", 403)

    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise LeagueRuleError("Please enter a valid bid amount", 400)

    if player.team_id is not None:
        raise LeagueRuleError("Player is not a free agent", 409)

    current = highest_active_bid(player.id)
    required = minimum_bid(player, current)
    if amount < required:
        raise LeagueRuleError(f"Minimum bid is ${required:,}", 400)

    if current and current.team_id == team.id:
        raise LeagueRuleError("Your team already holds the highest bid for this player", 409)

    leading = leading_bids(team.id, exclude_player_id=player.id)
    committed = sum(b.bid_amount for b in leading)
    cap_space = team_cap(team) - team_payroll(team.id) - committed
    if amount > cap_space:
        raise LeagueRuleError(f"This bid would exceed your salary cap. Available space: ${cap_space:,}", 400)

    if roster_size(team.id) + len(leading) >= ROSTER_LIMIT:
        raise LeagueRuleError(f"Your team roster is full ({ROSTER_LIMIT} players)", 400)

    latest = highest_active_bid(player.id)
    if (latest.id if latest else None) != (current.id if current else None):
        raise LeagueRuleError("A new bid was placed on this player, please refresh and try again", 409)

    duration = int(get_setting("bidding_duration", DEFAULT_BIDDING_DURATION))
    bid = PlayerBid(
        player_id=player.id,
        team_id=team.id,
        bid_amount=amount,
        status="Active",
        finalized=False,
        bid_expires_at=now + timedelta(seconds=duration),
        placed_by=user_id,
        created_at=now,
    )
    db.session.add(bid)
    return bid


def process_bid_winner(bid, now=None):
    """Sign the bid's player to the bid's team and close every other bid on that player."""
    now = now or datetime.utcnow()
    player = bid.player
    team = bid.team

    if not player or not player.user:
        raise LeagueRuleError("Invalid player data in bid", 400)
    if not team:
        raise LeagueRuleError("Winning team not found", 404)
    if player.team_id is not None and player.team_id != bid.team_id:
        raise LeagueRuleError(f"{player.user.gamer_tag_id} is already signed to another team", 409)

    player.team_id = team.id
    player.salary = bid.bid_amount
    player.status = "active"

    bid.status = "Won"
    bid.finalized = True
    bid.updated_at = now

    others = PlayerBid.query.filter(
        PlayerBid.player_id == player.id,
        PlayerBid.id != bid.id,
        PlayerBid.finalized.is_(False),
    ).all()
    for other in others:
        other.status = "Outbid"
        other.finalized = True
        other.updated_at = now

    db.session.add(PlayerTransfer(
        player_id=player.id,
        from_team_id=None,
        to_team_id=team.id,
        transfer_amount=bid.bid_amount,
        kind="bid",
        transfer_date=now,
    ))
    notify_user(
        player.user_id,
        "Bid Successful - You've Been Signed!",
        f"Congratulations! {team.name} has successfully signed you for ${bid.bid_amount:,}. Welcome to the team!",
        link="/profile",
    )
    db.session.commit()

    from discord_integration import sync_user_roles_quietly
    sync_user_roles_quietly(player.user)

    return {
        "success": True,
        "message": f"Successfully assigned {player.user.gamer_tag_id} to {team.name} for ${bid.bid_amount:,}",
        "playerId": player.id,
        "playerName": player.user.gamer_tag_id,
        "teamName": team.name,
        "amount": bid.bid_amount,
    }


def _award_bids(bids, now):
    result = {"success": True, "message": "", "processed": 0, "errors": [], "details": []}

    by_player = defaultdict(list)
    for bid in bids:
        by_player[bid.player_id].append(bid)

    for player_id, player_bids in by_player.items():
        top = max(player_bids, key=lambda b: (b.bid_amount, -b.created_at.timestamp(), -b.id))
        try:
            details = process_bid_winner(top, now=now)
        except LeagueRuleError as e:
            db.session.rollback()
            for bid in PlayerBid.query.filter(PlayerBid.player_id == player_id,
                                              PlayerBid.finalized.is_(False)).all():
                bid.status = "Cancelled"
                bid.finalized = True
            db.session.commit()
            result["errors"].append(f"Failed to process bid for player {player_id}: {e.message}")
            continue
        result["processed"] += 1
        result["details"].append({
            "playerId": player_id,
            "playerName": details["playerName"],
            "winningTeam": details["teamName"],
            "winningAmount": details["amount"],
        })

    result["message"] = f"Successfully processed {result['processed']} expired bids"
    return result


def process_expired_bids(now=None):
    """Award every player whose bidding window has closed to the top bidder."""
    now = now or datetime.utcnow()
    player_ids = [row.player_id for row in db.session.query(PlayerBid.player_id).filter(
        PlayerBid.bid_expires_at < now,
        PlayerBid.status == "Active",
        PlayerBid.finalized.is_(False),
    ).distinct()]

    # Only the current top bid's clock closes the window
    expired = []
    for player_id in player_ids:
        top = highest_active_bid(player_id)
        if top and top.bid_expires_at and top.bid_expires_at < now:
            expired.append(top)
    if not expired:
        return {"success": True, "message": "No expired bids found to process",
                "processed": 0, "errors": [], "details": []}
    return _award_bids(expired, now)


def force_end_bids(now=None):
    """Close all open bidding immediately, awarding each free agent to their top bidder."""
    now = now or datetime.utcnow()
    open_bids = PlayerBid.query.join(Player, PlayerBid.player_id == Player.id).filter(
        PlayerBid.status == "Active",
        PlayerBid.finalized.is_(False),
        Player.team_id.is_(None),
    ).all()
    if not open_bids:
        return {"success": True, "message": "No active bids to process",
                "processed": 0, "errors": [], "details": []}
    return _award_bids(open_bids, now)


def bidding_recap():
    recap = []
    for team in Team.query.filter_by(is_active=True).order_by(Team.name).all():
        payroll = team_payroll(team.id)
        won = PlayerBid.query.filter_by(team_id=team.id, status="Won").all()
        recap.append({
            "team_id": team.id,
            "team_name": team.name,
            "current_salary": payroll,
            "cap_space_remaining": team_cap(team) - payroll,
            "roster_size": roster_size(team.id),
            "players_won": len(won),
            "total_won_amount": sum(b.bid_amount for b in won),
            "leading_bids": len(leading_bids(team.id)),
        })
    return recap


# ============================================================================
# TRANSFERS
# ============================================================================

def create_transfer_offer(player, to_team, amount, user_id=None, now=None):
    now = now or datetime.utcnow()

    if not get_setting("transfers_enabled", True):
        raise LeagueRuleError("Transfers are currently closed", 403)
    if player.team_id is None:
        raise LeagueRuleError("Player is a free agent, place a bid instead", 400)
    if player.team_id == to_team.id:
        raise LeagueRuleError("Player is already on your team", 400)
    if amount is None or not isinstance(amount, int) or amount < 0:
        raise LeagueRuleError("Offer amount must be a non-negative integer", 400)

    existing = TransferOffer.query.filter_by(player_id=player.id, to_team_id=to_team.id,
                                             status="pending").first()
    if existing:
        raise LeagueRuleError("Your team already has a pending offer for this player", 409)

    salary = amount or player.salary or 0
    if team_payroll(to_team.id) + salary > team_cap(to_team):
        raise LeagueRuleError("This offer would exceed your salary cap", 400)

    offer = TransferOffer(
        player_id=player.id,
        from_team_id=player.team_id,
        to_team_id=to_team.id,
        offer_amount=amount,
        status="pending",
        expires_at=now + timedelta(days=TRANSFER_OFFER_DAYS),
        created_by=user_id,
        created_at=now,
    )
    db.session.add(offer)
    return offer


def respond_to_offer(offer, accept, now=None):
    now = now or datetime.utcnow()

    if offer.status != "pending":
        raise LeagueRuleError(f"Offer is already {offer.status}", 409)
    if offer.expires_at < now:
        offer.status = "expired"
        db.session.commit()
        raise LeagueRuleError("Offer has expired", 409)

    if not accept:
        offer.status = "rejected"
        offer.updated_at = now
        db.session.commit()
        return offer

    player = offer.player
    if player.team_id != offer.from_team_id:
        offer.status = "superseded"
        db.session.commit()
        raise LeagueRuleError("Player is no longer on the offering team", 409)

    player.team_id = offer.to_team_id
    if offer.offer_amount:
        player.salary = offer.offer_amount
    offer.status = "accepted"
    offer.updated_at = now

    for other in TransferOffer.query.filter(TransferOffer.player_id == player.id,
                                            TransferOffer.id != offer.id,
                                            TransferOffer.status == "pending").all():
        other.status = "superseded"
        other.updated_at = now

    db.session.add(PlayerTransfer(
        player_id=player.id,
        from_team_id=offer.from_team_id,
        to_team_id=offer.to_team_id,
        transfer_amount=offer.offer_amount,
        kind="transfer",
        transfer_date=now,
    ))
    notify_user(player.user_id, "You've Been Traded",
                f"You have been transferred to {offer.to_team.name}.", link="/profile")
    db.session.commit()

    from discord_integration import sync_user_roles_quietly
    sync_user_roles_quietly(player.user)
    return offer


def sign_free_agent(player, team, amount, now=None):
    now = now or datetime.utcnow()
    if player.team_id is not None:
        raise LeagueRuleError("Player is not a free agent", 409)

    player.team_id = team.id
    player.salary = amount or player.salary or DEFAULT_PLAYER_SALARY
    for bid in PlayerBid.query.filter_by(player_id=player.id, finalized=False).all():
        bid.status = "Cancelled"
        bid.finalized = True

    transfer = PlayerTransfer(player_id=player.id, from_team_id=None, to_team_id=team.id,
                              transfer_amount=player.salary, kind="signing", transfer_date=now)
    db.session.add(transfer)
    notify_user(player.user_id, "You've Been Signed!",
                f"{team.name} has signed you for ${player.salary:,}.", link="/profile")
    return transfer


def expire_transfer_offers(now=None):
    now = now or datetime.utcnow()
    stale = TransferOffer.query.filter(TransferOffer.status == "pending",
                                       TransferOffer.expires_at < now).all()
    for offer in stale:
        offer.status = "expired"
        offer.updated_at = now
    db.session.commit()
    return len(stale)
