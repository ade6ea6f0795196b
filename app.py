from flask import Flask, request, session
import os
import secrets
import logging
from functools import wraps
from datetime import datetime, timedelta

from dotenv import load_dotenv
from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.security import generate_password_hash, check_password_hash

from models import (
    db, User, UserRole, Conference, Team, Player, Match, GameAvailability, InjuryReserve,
    PlayerBid, TransferOffer, PlayerTransfer, News, Notification, AuditLog,
    VerificationToken, VerificationLog,
)
from utils import (
    LeagueRuleError,
    DEFAULT_BIDDING_DURATION,
    DEFAULT_PLAYER_SALARY,
    normalize_role,
    user_is_admin,
    managed_team_ids,
    can_manage_team,
    team_manager_user_ids,
    get_setting,
    set_setting,
    parse_date,
    parse_datetime,
    season_standings,
    sync_team_standings,
    group_standings_by_conference,
    record_audit,
    search_audit_logs,
    notify_user,
    send_verification_email,
    consume_verification_token,
    find_overlapping_reserves,
    mark_injury_availability,
    clear_injury_availability,
    highest_active_bid,
    minimum_bid,
    place_bid,
    process_expired_bids,
    force_end_bids,
    bidding_recap,
    create_transfer_offer,
    respond_to_offer,
    sign_free_agent,
)
from discord_integration import (
    DiscordAPIError, DiscordClient, get_bot_config, sync_user_roles, sync_user_roles_quietly, sync_all_roles,
)
from ea_integration import EAAPIError, EAClient, recent_matches, extract_scores
from migrations import MIGRATIONS, MigrationError, run_migration, list_migrations

app = Flask(__name__)

# Ensure .env values override any existing process variables
load_dotenv(override=True)

# Production-ready secret key (CRITICAL: Set SECRET_KEY in environment variables)
app.secret_key = os.environ.get("SECRET_KEY", secrets.token_hex(32))

# Database Configuration
# Supports both DATABASE_URL (Render/Heroku) and DATABASE_URI (legacy)
database_url = os.environ.get("DATABASE_URL") or os.environ.get("DATABASE_URI")

# Fallback to SQLite only if no database URL is provided
if not database_url:
    database_url = "sqlite:///instance/league.db"
    logging.warning("No DATABASE_URL found, using SQLite fallback")

# Fix for Render: postgres:// -> postgresql://
if database_url.startswith("postgres://"):
    database_url = database_url.replace("postgres://", "postgresql://", 1)

app.config["SQLALCHEMY_DATABASE_URI"] = database_url
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
if database_url.startswith("postgresql://"):
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {
        "pool_pre_ping": True,  # Verify connections before using
        "pool_recycle": 300,     # Recycle connections after 5 minutes
        "pool_size": 3,          # Conservative for free tier
        "max_overflow": 2,
        "pool_timeout": 30,
        "connect_args": {"connect_timeout": 10},
    }

db.init_app(app)

SITE_URL = os.environ.get("SITE_URL", "http://localhost:5000")
CRON_SECRET = os.environ.get("CRON_SECRET")

INJURY_RESERVE_STATUSES = ("active", "completed", "cancelled")
MATCH_STATUSES = ("scheduled", "in_progress", "completed")


# ============================================================================
# REQUEST HELPERS
# ============================================================================

def current_user():
    user_id = session.get("user_id")
    if not user_id:
        return None
    return db.session.get(User, user_id)


def check_admin_auth():
    """Admin console session, or a signed-in user holding an admin role"""
    if session.get("admin_authenticated", False):
        return True
    return user_is_admin(current_user())


def require_admin_auth(f):
    """Decorator to require admin authentication for routes"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if check_admin_auth():
            return f(*args, **kwargs)
        if current_user():
            return {"error": "Admin access required"}, 403
        return {"error": "Authentication required"}, 401
    return decorated_function


def require_login(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not current_user() and not session.get("admin_authenticated", False):
            return {"error": "Authentication required"}, 401
        return f(*args, **kwargs)
    return decorated_function


def client_ip():
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("X-Real-IP") or request.remote_addr


def audit(action, table_name, record_id=None, old_data=None, new_data=None):
    user = current_user()
    return record_audit(action, table_name, record_id, old_data, new_data,
                        user_id=user.id if user else None, ip_address=client_ip())


def json_body():
    return request.get_json(silent=True) or {}


def pick(data, *keys):
    """First non-empty value among snake_case / camelCase spellings"""
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def to_int(value, field, minimum=None):
    if isinstance(value, bool):
        raise LeagueRuleError(f"{field} must be a whole number", 400)
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise LeagueRuleError(f"{field} must be a whole number", 400)
    if isinstance(value, float) and value != number:
        raise LeagueRuleError(f"{field} must be a whole number", 400)
    if minimum is not None and number < minimum:
        raise LeagueRuleError(f"{field} must be at least {minimum}", 400)
    return number


def to_bool(value):
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def get_or_404(model, object_id, label):
    record = db.session.get(model, object_id) if object_id is not None else None
    if record is None:
        raise LeagueRuleError(f"{label} not found", 404)
    return record


@app.errorhandler(LeagueRuleError)
def league_rule_error(e):
    db.session.rollback()
    return {"error": e.message}, e.status_code


@app.route("/health")
def health():
    """Fast health check endpoint for deployment monitoring"""
    return {"status": "ok"}, 200


# ============================================================================
# AUTH
# ============================================================================

@app.route("/api/auth/register", methods=["POST"])
def register():
    data = json_body()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    gamer_tag = (pick(data, "gamer_tag_id", "gamerTag", "gamer_tag") or "").strip()
    primary_position = (pick(data, "primary_position", "primaryPosition") or "").strip()
    console = (data.get("console") or "").strip()

    if not all([email, password, gamer_tag, primary_position, console]):
        return {"error": "Email, password, gamer tag, primary position and console are required"}, 400
    if "@" not in email:
        return {"error": "Please enter a valid email address"}, 400
    if len(password) < 8:
        return {"error": "Password must be at least 8 characters"}, 400

    if User.query.filter(func.lower(User.email) == email).first():
        return {"error": "An account with this email already exists"}, 409

    user = User(
        email=email,
        password_hash=generate_password_hash(password),
        gamer_tag_id=gamer_tag,
        primary_position=primary_position,
        secondary_position=pick(data, "secondary_position", "secondaryPosition"),
        console=console,
        discord_name=pick(data, "discord_name", "discordName"),
        registration_ip=client_ip(),
    )
    db.session.add(user)
    db.session.flush()
    db.session.add(UserRole(user_id=user.id, role="Player"))
    db.session.add(Player(user_id=user.id, team_id=None, salary=DEFAULT_PLAYER_SALARY,
                          role="Player", status="active"))
    record_audit("INSERT", "users", user.id, None, {"email": email, "gamer_tag_id": gamer_tag},
                 user_id=user.id, ip_address=client_ip())
    db.session.commit()

    sent, _ = send_verification_email(user, SITE_URL)
    db.session.commit()
    app.logger.info(f"[REGISTER] {email} registered (verification email sent: {sent})")

    return {"success": True, "user": user.to_dict(), "verification_email_sent": sent}, 201


@app.route("/api/auth/login", methods=["POST"])
def login():
    data = json_body()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    if not email or not password:
        return {"error": "Email and password are required"}, 400

    user = User.query.filter(func.lower(User.email) == email).first()
    if not user or not user.password_hash or not check_password_hash(user.password_hash, password):
        return {"error": "Invalid email or password"}, 401

    if user.ban_active():
        return {
            "error": "This account has been banned",
            "reason": user.ban_reason,
            "expires_at": user.ban_expires_at.isoformat() if user.ban_expires_at else None,
        }, 403
    if not user.is_active:
        return {"error": "This account has been deactivated"}, 403
    if not user.email_verified:
        return {"error": "Please verify your email address before logging in", "status": "unverified"}, 403

    session["user_id"] = user.id
    session.permanent = True
    user.last_login_at = datetime.utcnow()
    user.last_login_ip = client_ip()
    db.session.commit()
    return {"success": True, "user": user.to_dict()}


@app.route("/api/auth/logout", methods=["POST"])
def logout():
    session.pop("user_id", None)
    return {"success": True}


@app.route("/api/auth/send-verification", methods=["POST"])
def send_verification():
    email = (json_body().get("email") or "").strip().lower()
    if not email:
        return {"error": "Email is required"}, 400

    user = User.query.filter(func.lower(User.email) == email).first()
    if not user:
        return {"error": "No account found with this email address", "status": "not_registered"}, 400
    if user.email_verified:
        return {"success": True, "status": "already_verified"}

    sent, _ = send_verification_email(user, SITE_URL)
    db.session.commit()
    if not sent:
        app.logger.error(f"[VERIFY] Failed to send verification email to {email}")
        return {"error": "Failed to send verification email", "status": "email_failed"}, 500
    return {"success": True, "status": "email_sent"}


@app.route("/api/auth/verify", methods=["POST"])
def verify_email():
    token = (json_body().get("token") or "").strip()
    if not token:
        return {"error": "Token is required"}, 400
    user = consume_verification_token(token)
    db.session.commit()
    return {"success": True, "message": "Email verified successfully", "user": user.to_dict()}


@app.route("/api/admin/manual-verify", methods=["POST"])
@require_admin_auth
def manual_verify():
    email = (json_body().get("email") or "").strip().lower()
    if not email:
        return {"error": "Email is required"}, 400
    user = User.query.filter(func.lower(User.email) == email).first()
    if not user:
        return {"error": "User not found"}, 404

    was_verified = bool(user.email_verified)
    user.email_verified = True
    for token in VerificationToken.query.filter_by(user_id=user.id, used_at=None).all():
        token.used_at = datetime.utcnow()
    db.session.add(VerificationLog(user_id=user.id, email=user.email, status="manual_verified",
                                   details="Verified manually by an administrator"))
    audit("UPDATE", "users", user.id, {"email_verified": was_verified}, {"email_verified": True})
    db.session.commit()
    return {"success": True, "user": user.to_dict()}


@app.route("/api/admin/reset-user-password", methods=["POST"])
@require_admin_auth
def reset_user_password():
    data = json_body()
    new_password = pick(data, "new_password", "newPassword") or ""
    user_id = pick(data, "user_id", "userId")
    email = (data.get("email") or "").strip().lower()

    if len(new_password) < 8:
        return {"error": "Password must be at least 8 characters"}, 400
    if user_id is not None:
        user = db.session.get(User, to_int(user_id, "user_id"))
    elif email:
        user = User.query.filter(func.lower(User.email) == email).first()
    else:
        return {"error": "user_id or email is required"}, 400
    if not user:
        return {"error": "User not found"}, 404

    user.password_hash = generate_password_hash(new_password)
    audit("UPDATE", "users", user.id, None, {"password_reset": True})
    db.session.commit()
    return {"success": True}


@app.route("/admin/login", methods=["GET", "POST"])
def admin_login():
    """Shared-secret login for the admin console"""
    if request.method == "POST":
        password = (json_body().get("password") or request.form.get("password", "")).strip()
        admin_password = os.environ.get("ADMIN_PASSWORD")

        if admin_password and secrets.compare_digest(password, admin_password):
            session["admin_authenticated"] = True
            session.permanent = True
            return {"success": True}
        return {"error": "Incorrect password"}, 401

    return {"authenticated": check_admin_auth()}


@app.route("/admin/logout", methods=["GET", "POST"])
def admin_logout():
    session.pop("admin_authenticated", None)
    return {"success": True}


# ============================================================================
# ADMIN: USERS
# ============================================================================

@app.route("/api/admin/users")
@require_admin_auth
def admin_list_users():
    search = (request.args.get("search") or "").strip()
    role = (request.args.get("role") or "").strip()
    limit = min(to_int(request.args.get("limit", 50), "limit", minimum=1), 200)
    offset = to_int(request.args.get("offset", 0), "offset", minimum=0)

    query = User.query
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(User.email.ilike(pattern), User.gamer_tag_id.ilike(pattern),
                                 User.discord_name.ilike(pattern)))
    if role:
        query = query.join(UserRole, UserRole.user_id == User.id).filter(UserRole.role == normalize_role(role))

    total = query.count()
    users = query.order_by(User.created_at.desc(), User.id.desc()).offset(offset).limit(limit).all()
    rows = []
    for user in users:
        row = user.to_dict()
        row["player"] = user.player.to_dict() if user.player else None
        rows.append(row)
    return {"users": rows, "total": total, "limit": limit, "offset": offset}


@app.route("/api/admin/users/<int:user_id>/roles", methods=["PUT"])
@require_admin_auth
def admin_set_user_roles(user_id):
    user = get_or_404(User, user_id, "User")
    roles = json_body().get("roles")
    if not isinstance(roles, list) or not all(isinstance(r, str) and r.strip() for r in roles):
        return {"error": "roles must be a list of role names"}, 400

    new_roles = []
    for role in roles:
        normalized = normalize_role(role)
        if normalized not in new_roles:
            new_roles.append(normalized)

    old_roles = user.role_names
    user.roles = [UserRole(role=r) for r in new_roles]
    audit("UPDATE", "user_roles", user.id, {"roles": old_roles}, {"roles": new_roles})
    db.session.commit()
    sync_user_roles_quietly(user)
    return {"success": True, "user": user.to_dict()}


@app.route("/api/admin/users/<int:user_id>/ban", methods=["POST"])
@require_admin_auth
def admin_ban_user(user_id):
    user = get_or_404(User, user_id, "User")
    data = json_body()
    reason = (data.get("reason") or "").strip()
    if not reason:
        return {"error": "A ban reason is required"}, 400

    duration = pick(data, "duration_hours", "durationHours")
    expires_at = None
    if duration is not None:
        expires_at = datetime.utcnow() + timedelta(hours=to_int(duration, "duration_hours", minimum=1))

    old = {"is_banned": user.is_banned, "ban_reason": user.ban_reason}
    user.is_banned = True
    user.ban_reason = reason
    user.ban_expires_at = expires_at
    audit("BAN", "users", user.id, old, {"is_banned": True, "ban_reason": reason,
                                         "ban_expires_at": expires_at.isoformat() if expires_at else None})
    db.session.commit()
    app.logger.info(f"[ADMIN] Banned user {user.id} ({reason})")
    return {"success": True, "user": user.to_dict()}


@app.route("/api/admin/users/<int:user_id>/unban", methods=["POST"])
@require_admin_auth
def admin_unban_user(user_id):
    user = get_or_404(User, user_id, "User")
    old = {"is_banned": user.is_banned, "ban_reason": user.ban_reason}
    user.is_banned = False
    user.ban_reason = None
    user.ban_expires_at = None
    audit("UNBAN", "users", user.id, old, {"is_banned": False})
    db.session.commit()
    return {"success": True, "user": user.to_dict()}


@app.route("/api/admin/users/<int:user_id>", methods=["DELETE"])
@require_admin_auth
def admin_delete_user(user_id):
    """Complete deletion: every row that belongs to the user goes with them"""
    user = get_or_404(User, user_id, "User")
    me = current_user()
    if me and me.id == user.id:
        return {"error": "You cannot delete your own account"}, 400

    snapshot = user.to_dict()
    try:
        player = user.player
        if player:
            PlayerBid.query.filter_by(player_id=player.id).delete(synchronize_session=False)
            TransferOffer.query.filter_by(player_id=player.id).delete(synchronize_session=False)
            PlayerTransfer.query.filter_by(player_id=player.id).delete(synchronize_session=False)
        PlayerBid.query.filter_by(placed_by=user.id).update({"placed_by": None}, synchronize_session=False)
        TransferOffer.query.filter_by(created_by=user.id).update({"created_by": None}, synchronize_session=False)
        News.query.filter_by(author_id=user.id).update({"author_id": None}, synchronize_session=False)
        InjuryReserve.query.filter_by(user_id=user.id).delete(synchronize_session=False)
        GameAvailability.query.filter_by(user_id=user.id).delete(synchronize_session=False)
        Notification.query.filter_by(user_id=user.id).delete(synchronize_session=False)
        VerificationToken.query.filter_by(user_id=user.id).delete(synchronize_session=False)
        if player:
            db.session.delete(player)
        db.session.delete(user)
        audit("DELETE", "users", user_id, snapshot, None)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        app.logger.error(f"[ADMIN] Failed to delete user {user_id}: {e}")
        return {"error": "Failed to delete user"}, 500

    app.logger.info(f"[ADMIN] Deleted user {user_id} ({snapshot['email']})")
    return {"success": True, "deleted_user_id": user_id}


# ============================================================================
# NEWS
# ============================================================================

@app.route("/api/news")
def list_news():
    limit = min(to_int(request.args.get("limit", 20), "limit", minimum=1), 100)
    items = (News.query.filter_by(published=True)
             .order_by(News.featured.desc(), News.created_at.desc(), News.id.desc())
             .limit(limit).all())
    return {"news": [n.to_dict() for n in items]}


@app.route("/api/news/<int:news_id>")
def get_news(news_id):
    item = db.session.get(News, news_id)
    if not item or not item.published:
        return {"error": "News article not found"}, 404
    return {"news": item.to_dict()}


@app.route("/api/admin/news", methods=["GET", "POST"])
@require_admin_auth
def admin_news():
    if request.method == "GET":
        view = request.args.get("filter", "all")
        query = News.query
        if view == "published":
            query = query.filter_by(published=True)
        elif view == "draft":
            query = query.filter_by(published=False)
        elif view != "all":
            return {"error": "filter must be all, published or draft"}, 400
        items = query.order_by(News.created_at.desc(), News.id.desc()).all()
        return {"news": [n.to_dict() for n in items]}

    data = json_body()
    title = (data.get("title") or "").strip()
    content = (data.get("content") or "").strip()
    if not title or not content:
        return {"error": "Title and content are required"}, 400

    me = current_user()
    item = News(
        title=title,
        content=content,
        image_url=pick(data, "image_url", "imageUrl"),
        published=to_bool(data.get("published", False)),
        featured=to_bool(data.get("featured", False)),
        author_id=me.id if me else None,
    )
    db.session.add(item)
    db.session.flush()
    audit("INSERT", "news", item.id, None, item.to_dict())
    db.session.commit()
    return {"success": True, "news": item.to_dict()}, 201


@app.route("/api/admin/news/<int:news_id>", methods=["PUT", "DELETE"])
@require_admin_auth
def admin_news_item(news_id):
    item = get_or_404(News, news_id, "News article")
    old = item.to_dict()

    if request.method == "DELETE":
        db.session.delete(item)
        audit("DELETE", "news", news_id, old, None)
        db.session.commit()
        return {"success": True}

    data = json_body()
    if "title" in data:
        title = (data.get("title") or "").strip()
        if not title:
            return {"error": "Title cannot be empty"}, 400
        item.title = title
    if "content" in data:
        content = (data.get("content") or "").strip()
        if not content:
            return {"error": "Content cannot be empty"}, 400
        item.content = content
    image_url = pick(data, "image_url", "imageUrl")
    if image_url is not None:
        item.image_url = image_url
    if "published" in data:
        item.published = to_bool(data["published"])
    if "featured" in data:
        item.featured = to_bool(data["featured"])
    item.updated_at = datetime.utcnow()

    audit("UPDATE", "news", item.id, old, item.to_dict())
    db.session.commit()
    return {"success": True, "news": item.to_dict()}


@app.route("/api/admin/news/<int:news_id>/toggle-published", methods=["POST"])
@require_admin_auth
def admin_toggle_news_published(news_id):
    item = get_or_404(News, news_id, "News article")
    item.published = not item.published
    audit("UPDATE", "news", item.id, {"published": not item.published}, {"published": item.published})
    db.session.commit()
    return {"success": True, "news": item.to_dict()}


@app.route("/api/admin/news/<int:news_id>/toggle-featured", methods=["POST"])
@require_admin_auth
def admin_toggle_news_featured(news_id):
    item = get_or_404(News, news_id, "News article")
    item.featured = not item.featured
    audit("UPDATE", "news", item.id, {"featured": not item.featured}, {"featured": item.featured})
    db.session.commit()
    return {"success": True, "news": item.to_dict()}


# ============================================================================
# MATCHES / STANDINGS
# ============================================================================

@app.route("/api/matches")
def list_matches():
    query = Match.query
    team_id = request.args.get("team_id")
    if team_id:
        team_id = to_int(team_id, "team_id")
        query = query.filter(or_(Match.home_team_id == team_id, Match.away_team_id == team_id))
    status = request.args.get("status")
    if status:
        query = query.filter(Match.status == status)
    season_id = request.args.get("season_id")
    if season_id:
        query = query.filter(Match.season_id == to_int(season_id, "season_id"))
    matches = query.order_by(Match.match_date.asc(), Match.id.asc()).all()
    return {"matches": [m.to_dict() for m in matches]}


@app.route("/api/matches/featured")
def featured_matches():
    matches = Match.query.filter_by(featured=True).all()
    # Upcoming first (soonest at the top), then finished games newest first
    upcoming = sorted((m for m in matches if m.status != "completed"), key=lambda m: m.match_date)
    finished = sorted((m for m in matches if m.status == "completed"), key=lambda m: m.match_date, reverse=True)
    return {"matches": [m.to_dict() for m in upcoming + finished]}


@app.route("/api/admin/matches/<int:match_id>/toggle-featured", methods=["POST"])
@require_admin_auth
def admin_toggle_match_featured(match_id):
    match = get_or_404(Match, match_id, "Match")
    match.featured = not match.featured
    audit("UPDATE", "matches", match.id, {"featured": not match.featured}, {"featured": match.featured})
    db.session.commit()
    return {"success": True, "match": match.to_dict()}


@app.route("/api/matches/update-score", methods=["POST"])
@require_login
def update_match_score():
    data = json_body()
    match_id = pick(data, "match_id", "matchId")
    if match_id is None:
        return {"error": "match_id is required"}, 400
    match = get_or_404(Match, to_int(match_id, "match_id"), "Match")

    user = current_user()
    if not (check_admin_auth() or can_manage_team(user, match.home_team_id)
            or can_manage_team(user, match.away_team_id)):
        return {"error": "Only admins or managers of the teams involved can update this score"}, 403

    home_score = pick(data, "home_score", "homeScore")
    away_score = pick(data, "away_score", "awayScore")
    if home_score is None or away_score is None:
        return {"error": "Both home and away scores are required"}, 400
    home_score = to_int(home_score, "home_score", minimum=0)
    away_score = to_int(away_score, "away_score", minimum=0)

    status = data.get("status") or "completed"
    if status not in MATCH_STATUSES:
        return {"error": f"status must be one of {', '.join(MATCH_STATUSES)}"}, 400

    old = match.to_dict()
    match.home_score = home_score
    match.away_score = away_score
    match.status = status
    match.has_overtime = to_bool(pick(data, "has_overtime", "hasOvertime") or False)
    match.has_shootout = to_bool(pick(data, "has_shootout", "hasShootout") or False)
    period_scores = pick(data, "period_scores", "periodScores")
    if period_scores is not None:
        if not isinstance(period_scores, list):
            return {"error": "period_scores must be a list"}, 400
        match.period_scores = period_scores
    match.updated_at = datetime.utcnow()

    audit("UPDATE", "matches", match.id, old, match.to_dict())
    db.session.commit()
    app.logger.info(f"[MATCH] Score updated for match {match.id}: {home_score}-{away_score} ({status})")
    return {"success": True, "match": match.to_dict()}


@app.route("/api/standings")
def standings():
    season_id = request.args.get("season_id")
    season, rows = season_standings(to_int(season_id, "season_id") if season_id else None)
    grouped = group_standings_by_conference(rows, Conference.query.all())
    return {
        "season": season.to_dict() if season else None,
        "standings": rows,
        "conferences": list(grouped.values()),
    }


@app.route("/api/admin/sync-standings", methods=["POST"])
@require_admin_auth
def admin_sync_standings():
    season_id = pick(json_body(), "season_id", "seasonId")
    season, rows = sync_team_standings(to_int(season_id, "season_id") if season_id else None)
    audit("SYNC_STANDINGS", "teams", None, None, {"season_id": season.id if season else None,
                                                 "teams": len(rows)})
    db.session.commit()
    return {"success": True, "teams_updated": len(rows), "standings": rows}


# ============================================================================
# INJURY RESERVES
# ============================================================================

def _reserve_dates(data, reserve=None):
    start = pick(data, "week_start_date", "weekStartDate")
    end = pick(data, "week_end_date", "weekEndDate")
    try:
        start = parse_date(start) if start is not None else (reserve.week_start_date if reserve else None)
        end = parse_date(end) if end is not None else (reserve.week_end_date if reserve else None)
    except ValueError:
        raise LeagueRuleError("Dates must be in YYYY-MM-DD format", 400)
    if start is None or end is None:
        raise LeagueRuleError("Week start and end dates are required", 400)
    if start >= end:
        raise LeagueRuleError("Week end date must be after week start date", 400)
    return start, end


def _apply_availability(reserve):
    """Mark the player unavailable for the window; failures are logged only"""
    try:
        marked = mark_injury_availability(reserve)
        db.session.commit()
        return marked
    except SQLAlchemyError as e:
        db.session.rollback()
        app.logger.error(f"[INJURY RESERVE] Could not update game availability for reserve {reserve.id}: {e}")
        return 0


@app.route("/api/injury-reserves", methods=["GET", "POST", "PUT", "DELETE"])
@require_login
def injury_reserves():
    if request.method == "GET":
        query = InjuryReserve.query
        team_id = pick(request.args, "teamId", "team_id")
        if team_id:
            query = query.filter(InjuryReserve.team_id == to_int(team_id, "teamId"))
        user_id = pick(request.args, "userId", "user_id")
        if user_id:
            query = query.filter(InjuryReserve.user_id == to_int(user_id, "userId"))
        status = request.args.get("status", "active")
        if status != "all":
            query = query.filter(InjuryReserve.status == status)
        try:
            week_start = pick(request.args, "weekStart", "week_start")
            if week_start:
                query = query.filter(InjuryReserve.week_end_date >= parse_date(week_start))
            week_end = pick(request.args, "weekEnd", "week_end")
            if week_end:
                query = query.filter(InjuryReserve.week_start_date <= parse_date(week_end))
        except ValueError:
            return {"error": "Dates must be in YYYY-MM-DD format"}, 400
        reserves = query.order_by(InjuryReserve.week_start_date.desc(), InjuryReserve.id.desc()).all()
        return {"injuryReserves": [r.to_dict() for r in reserves]}

    user = current_user()

    if request.method == "POST":
        data = json_body()
        user_id = pick(data, "user_id", "userId")
        team_id = pick(data, "team_id", "teamId")
        if user_id is None or team_id is None:
            return {"error": "User, team, week start and week end are required"}, 400
        user_id = to_int(user_id, "user_id")
        team_id = to_int(team_id, "team_id")
        start, end = _reserve_dates(data)

        if not (check_admin_auth() or can_manage_team(user, team_id)):
            return {"error": "Only admins or managers of this team can place players on injury reserve"}, 403

        if not Player.query.filter_by(user_id=user_id, team_id=team_id).first():
            return {"error": "Player not found on this team"}, 404

        if find_overlapping_reserves(user_id, team_id, start, end):
            return {"error": "Player already has an active injury reserve that overlaps these dates"}, 409

        season_id = pick(data, "season_id", "seasonId")
        week_number = pick(data, "week_number", "weekNumber")
        season_id = to_int(season_id, "season_id") if season_id is not None else None
        week_number = to_int(week_number, "week_number", minimum=1) if week_number is not None else None

        reserve = InjuryReserve(
            user_id=user_id,
            team_id=team_id,
            season_id=season_id,
            week_start_date=start,
            week_end_date=end,
            week_number=week_number,
            reason=data.get("reason"),
            status="active",
        )
        db.session.add(reserve)
        db.session.flush()
        audit("INSERT", "injury_reserves", reserve.id, None, reserve.to_dict())
        db.session.commit()

        marked = _apply_availability(reserve)
        return {"success": True, "injuryReserve": reserve.to_dict(), "gamesMarked": marked}, 201

    if request.method == "PUT":
        data = json_body()
        reserve_id = data.get("id")
        if reserve_id is None:
            return {"error": "Injury reserve id is required"}, 400
        reserve = get_or_404(InjuryReserve, to_int(reserve_id, "id"), "Injury reserve")

        if not (check_admin_auth() or can_manage_team(user, reserve.team_id)):
            return {"error": "Only admins or managers of this team can edit this injury reserve"}, 403

        start, end = _reserve_dates(data, reserve)
        status = data.get("status", reserve.status)
        if status not in INJURY_RESERVE_STATUSES:
            return {"error": f"status must be one of {', '.join(INJURY_RESERVE_STATUSES)}"}, 400
        if status == "active" and find_overlapping_reserves(reserve.user_id, reserve.team_id, start, end,
                                                            exclude_id=reserve.id):
            return {"error": "Player already has an active injury reserve that overlaps these dates"}, 409

        old = reserve.to_dict()
        old_start, old_end = reserve.week_start_date, reserve.week_end_date
        reserve.week_start_date = start
        reserve.week_end_date = end
        reserve.status = status
        if "reason" in data:
            reserve.reason = data.get("reason")
        week_number = pick(data, "week_number", "weekNumber")
        if week_number is not None:
            reserve.week_number = to_int(week_number, "week_number", minimum=1)
        reserve.updated_at = datetime.utcnow()

        clear_injury_availability(reserve.user_id, reserve.team_id, old_start, old_end)
        audit("UPDATE", "injury_reserves", reserve.id, old, reserve.to_dict())
        db.session.commit()
        if reserve.status == "active":
            _apply_availability(reserve)
        return {"success": True, "injuryReserve": reserve.to_dict()}

    reserve_id = request.args.get("id")
    if not reserve_id:
        return {"error": "Injury reserve id is required"}, 400
    reserve = get_or_404(InjuryReserve, to_int(reserve_id, "id"), "Injury reserve")
    if not (check_admin_auth() or can_manage_team(user, reserve.team_id)):
        return {"error": "Only admins or managers of this team can remove this injury reserve"}, 403

    old = reserve.to_dict()
    clear_injury_availability(reserve.user_id, reserve.team_id, reserve.week_start_date, reserve.week_end_date)
    db.session.delete(reserve)
    audit("DELETE", "injury_reserves", old["id"], old, None)
    db.session.commit()
    return {"success": True}


# ============================================================================
# BIDDING
# ============================================================================

@app.route("/api/free-agents")
def free_agents():
    players = Player.query.filter(Player.team_id.is_(None), Player.status == "active").all()
    rows = []
    for player in players:
        row = player.to_dict()
        top = highest_active_bid(player.id)
        row["current_bid"] = top.to_dict() if top else None
        row["minimum_bid"] = minimum_bid(player, top)
        rows.append(row)
    rows.sort(key=lambda r: (r["gamer_tag_id"] or "").lower())
    return {"free_agents": rows, "bidding_enabled": bool(get_setting("bidding_enabled", False))}


@app.route("/api/bids", methods=["POST"])
@require_login
def create_bid():
    data = json_body()
    player_id = pick(data, "player_id", "playerId")
    team_id = pick(data, "team_id", "teamId")
    amount = pick(data, "amount", "bid_amount", "bidAmount")
    if player_id is None or team_id is None or amount is None:
        return {"error": "player_id, team_id and amount are required"}, 400

    team = get_or_404(Team, to_int(team_id, "team_id"), "Team")
    player = get_or_404(Player, to_int(player_id, "player_id"), "Player")

    user = current_user()
    if not (check_admin_auth() or team.id in managed_team_ids(user)):
        return {"error": "Only team managers can place bids for this team"}, 403

    bid = place_bid(player, team, to_int(amount, "amount"), user_id=user.id if user else None)
    db.session.flush()
    audit("INSERT", "player_bidding", bid.id, None, bid.to_dict())
    db.session.commit()
    app.logger.info(f"[BID] {team.name} bid ${bid.bid_amount:,} on player {player.id}")
    return {"success": True, "bid": bid.to_dict()}, 201


@app.route("/api/admin/bidding", methods=["GET", "POST"])
@require_admin_auth
def admin_bidding_toggle():
    if request.method == "GET":
        return {"enabled": bool(get_setting("bidding_enabled", False))}

    enabled = json_body().get("enabled")
    if not isinstance(enabled, bool):
        return {"error": "enabled must be true or false"}, 400
    old = bool(get_setting("bidding_enabled", False))
    me = current_user()
    set_setting("bidding_enabled", enabled, user_id=me.id if me else None)
    audit("UPDATE", "system_settings", "bidding_enabled", {"value": old}, {"value": enabled})
    db.session.commit()
    return {"success": True, "enabled": enabled}


@app.route("/api/admin/bidding/duration", methods=["GET", "POST"])
@require_admin_auth
def admin_bidding_duration():
    if request.method == "GET":
        return {"duration": int(get_setting("bidding_duration", DEFAULT_BIDDING_DURATION))}

    duration = json_body().get("duration")
    if duration is None:
        return {"error": "duration (seconds) is required"}, 400
    duration = to_int(duration, "duration", minimum=60)
    old = int(get_setting("bidding_duration", DEFAULT_BIDDING_DURATION))
    me = current_user()
    set_setting("bidding_duration", duration, user_id=me.id if me else None)
    audit("UPDATE", "system_settings", "bidding_duration", {"value": old}, {"value": duration})
    db.session.commit()
    return {"success": True, "duration": duration}


@app.route("/api/admin/bids/<int:bid_id>/extend", methods=["POST"])
@require_admin_auth
def admin_extend_bid(bid_id):
    bid = get_or_404(PlayerBid, bid_id, "Bid")
    if bid.status != "Active" or bid.finalized:
        return {"error": "Only active bids can be extended"}, 409
    hours = to_int(json_body().get("hours", 24), "hours", minimum=1)

    old_expiry = bid.bid_expires_at
    bid.bid_expires_at = bid.bid_expires_at + timedelta(hours=hours)
    bid.updated_at = datetime.utcnow()
    audit("UPDATE", "player_bidding", bid.id, {"bid_expires_at": old_expiry.isoformat()},
          {"bid_expires_at": bid.bid_expires_at.isoformat()})
    db.session.commit()
    return {"success": True, "bid": bid.to_dict()}


@app.route("/api/admin/bids/<int:bid_id>/cancel", methods=["POST"])
@require_admin_auth
def admin_cancel_bid(bid_id):
    bid = get_or_404(PlayerBid, bid_id, "Bid")
    if bid.status != "Active" or bid.finalized:
        return {"error": "Only active bids can be cancelled"}, 409
    bid.status = "Cancelled"
    bid.finalized = True
    bid.updated_at = datetime.utcnow()
    audit("UPDATE", "player_bidding", bid.id, {"status": "Active"}, {"status": "Cancelled"})
    db.session.commit()
    return {"success": True, "bid": bid.to_dict()}


@app.route("/api/admin/force-end-bids", methods=["POST"])
@require_admin_auth
def admin_force_end_bids():
    result = force_end_bids()
    audit("FORCE_END_BIDS", "player_bidding", None, None,
          {"processed": result["processed"], "errors": result["errors"]})
    db.session.commit()
    return result


@app.route("/api/admin/bidding-recap")
@require_admin_auth
def admin_bidding_recap():
    return {"teams": bidding_recap()}


@app.route("/api/cron/process-expired-bids", methods=["POST"])
def cron_process_expired_bids():
    supplied = request.headers.get("Authorization", "").removeprefix("Bearer ").strip()
    supplied = supplied or request.headers.get("X-Cron-Secret", "")
    if not CRON_SECRET or not secrets.compare_digest(supplied, CRON_SECRET):
        return {"error": "Unauthorized"}, 401

    result = process_expired_bids()
    app.logger.info(f"[CRON] {result['message']}")
    return result


# ============================================================================
# TRANSFERS
# ============================================================================

@app.route("/api/transfers", methods=["GET", "POST"])
def transfers():
    if request.method == "GET":
        kind = request.args.get("type", "offers")
        team_id = request.args.get("team_id")
        team_id = to_int(team_id, "team_id") if team_id else None

        if kind == "offers":
            query = TransferOffer.query
            status = request.args.get("status")
            if status:
                query = query.filter(TransferOffer.status == status)
            if team_id:
                query = query.filter(or_(TransferOffer.from_team_id == team_id, TransferOffer.to_team_id == team_id))
            offers = query.order_by(TransferOffer.created_at.desc(), TransferOffer.id.desc()).all()
            return {"offers": [o.to_dict() for o in offers]}

        if kind == "completed":
            query = PlayerTransfer.query
            if team_id:
                query = query.filter(or_(PlayerTransfer.from_team_id == team_id, PlayerTransfer.to_team_id == team_id))
            completed = query.order_by(PlayerTransfer.transfer_date.desc(), PlayerTransfer.id.desc()).all()
            return {"transfers": [t.to_dict() for t in completed]}

        return {"error": "type must be offers or completed"}, 400

    user = current_user()
    if not user and not session.get("admin_authenticated", False):
        return {"error": "Authentication required"}, 401

    data = json_body()
    kind = data.get("type")
    player_id = pick(data, "player_id", "playerId")
    team_id = pick(data, "team_id", "teamId")
    if kind not in ("offer", "signing"):
        return {"error": "type must be offer or signing"}, 400
    if player_id is None or team_id is None:
        return {"error": "player_id and team_id are required"}, 400

    player = get_or_404(Player, to_int(player_id, "player_id"), "Player")
    team = get_or_404(Team, to_int(team_id, "team_id"), "Team")
    amount = pick(data, "amount", "offer_amount", "offerAmount")
    amount = to_int(amount, "amount", minimum=0) if amount is not None else 0

    if kind == "signing":
        if not check_admin_auth():
            return {"error": "Only admins can sign free agents directly"}, 403
        transfer = sign_free_agent(player, team, amount)
        db.session.flush()
        audit("INSERT", "player_transfers", transfer.id, None, transfer.to_dict())
        db.session.commit()
        sync_user_roles_quietly(player.user)
        return {"success": True, "transfer": transfer.to_dict()}, 201

    if not can_manage_team(user, team.id) and not check_admin_auth():
        return {"error": "Only managers of this team can make transfer offers"}, 403

    offer = create_transfer_offer(player, team, amount, user_id=user.id if user else None)
    db.session.flush()
    for manager_id in team_manager_user_ids(player.team_id):
        notify_user(manager_id, "New Transfer Offer",
                    f"{team.name} has made an offer for {player.user.gamer_tag_id}.", link="/transfers")
    audit("INSERT", "player_transfer_offers", offer.id, None, offer.to_dict())
    db.session.commit()
    return {"success": True, "offer": offer.to_dict()}, 201


@app.route("/api/transfers/<int:offer_id>/respond", methods=["POST"])
@require_login
def respond_transfer(offer_id):
    offer = get_or_404(TransferOffer, offer_id, "Transfer offer")
    action = json_body().get("action")
    if action not in ("accept", "reject"):
        return {"error": "action must be accept or reject"}, 400

    user = current_user()
    if not (check_admin_auth() or can_manage_team(user, offer.player.team_id)):
        return {"error": "Only managers of the player's current team can respond to this offer"}, 403

    old_status = offer.status
    respond_to_offer(offer, accept=(action == "accept"))
    audit("UPDATE", "player_transfer_offers", offer.id, {"status": old_status}, {"status": offer.status})
    db.session.commit()
    return {"success": True, "offer": offer.to_dict()}


# ============================================================================
# AUDIT LOGS / NOTIFICATIONS
# ============================================================================

@app.route("/api/admin/audit-logs")
@require_admin_auth
def admin_audit_logs():
    page = to_int(request.args.get("page", 1), "page", minimum=1)
    page_size = min(to_int(request.args.get("page_size", 20), "page_size", minimum=1), 100)
    try:
        start = parse_datetime(request.args["start"]) if request.args.get("start") else None
        end = parse_datetime(request.args["end"]) if request.args.get("end") else None
    except ValueError:
        return {"error": "start and end must be ISO dates"}, 400
    if end and len(request.args["end"].strip()) == 10:
        # Bare date: include the whole day
        end += timedelta(days=1) - timedelta(microseconds=1)

    rows, total = search_audit_logs(
        search_text=(request.args.get("search") or "").strip() or None,
        action=request.args.get("action") or None,
        table_name=request.args.get("table") or None,
        start=start,
        end=end,
        limit=page_size,
        offset=(page - 1) * page_size,
    )
    tables = sorted(t for (t,) in db.session.query(AuditLog.table_name).distinct().all() if t)
    return {
        "logs": [r.to_dict() for r in rows],
        "total": total,
        "page": page,
        "page_size": page_size,
        "total_pages": (total + page_size - 1) // page_size,
        "tables": tables,
    }


@app.route("/api/notifications")
@require_login
def list_notifications():
    user = current_user()
    if not user:
        return {"notifications": []}
    query = Notification.query.filter_by(user_id=user.id)
    if to_bool(request.args.get("unread", False)):
        query = query.filter_by(read=False)
    items = query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(50).all()
    return {"notifications": [n.to_dict() for n in items],
            "unread": Notification.query.filter_by(user_id=user.id, read=False).count()}


@app.route("/api/notifications/<int:notification_id>/read", methods=["POST"])
@require_login
def mark_notification_read(notification_id):
    user = current_user()
    item = db.session.get(Notification, notification_id)
    if not item or not user or item.user_id != user.id:
        return {"error": "Notification not found"}, 404
    item.read = True
    db.session.commit()
    return {"success": True, "notification": item.to_dict()}


# ============================================================================
# DISCORD
# ============================================================================

@app.route("/api/discord/assign-roles", methods=["POST"])
@require_login
def discord_assign_roles():
    user = current_user()
    target_id = pick(json_body(), "user_id", "userId")
    if target_id is not None and (not user or to_int(target_id, "user_id") != user.id):
        if not check_admin_auth():
            return {"error": "Only admins can sync roles for other users"}, 403
        user = get_or_404(User, to_int(target_id, "user_id"), "User")
    if not user:
        return {"error": "user_id is required"}, 400
    if not user.discord_id:
        return {"error": "User has no connected Discord account"}, 400

    config = get_bot_config()
    if not config:
        return {"error": "Bot configuration not found"}, 503
    client = DiscordClient(config["bot_token"], config["guild_id"])
    try:
        summary = sync_user_roles(user, client, config.get("registered_role_id"))
    except DiscordAPIError as e:
        app.logger.error(f"[DISCORD] assign-roles failed for user {user.id}: {e}")
        return {"error": str(e)}, 502
    return {"success": summary["status"] != "failed", "result": summary}


@app.route("/api/discord/sync-all-roles", methods=["POST"])
@require_admin_auth
def discord_sync_all_roles():
    delay = json_body().get("delay")
    if delay is not None:
        try:
            delay = float(delay)
        except (TypeError, ValueError):
            return {"error": "delay must be a number of seconds"}, 400
        if delay < 0:
            return {"error": "delay must be a number of seconds"}, 400
    try:
        results = sync_all_roles(delay=delay)
    except DiscordAPIError as e:
        app.logger.error(f"[DISCORD] sync-all-roles failed: {e}")
        return {"error": str(e)}, 502

    audit("SYNC_ROLES", "users", None, None, {k: results[k] for k in ("processed", "successful", "failed", "skipped")})
    db.session.commit()
    return {"success": True, **results}


# ============================================================================
# EA SPORTS
# ============================================================================

@app.route("/api/ea/past-matches")
def ea_past_matches():
    home_club_id = pick(request.args, "homeClubId", "clubId")
    away_club_id = request.args.get("awayClubId") if request.args.get("homeClubId") else None
    if not home_club_id:
        return {"error": "clubId or homeClubId is required"}, 400
    limit = min(to_int(request.args.get("limit", 10), "limit", minimum=1), 50)

    try:
        matches = recent_matches(EAClient(), home_club_id, away_club_id, limit=limit)
    except EAAPIError as e:
        app.logger.error(f"[EA] past-matches failed: {e}")
        return {"error": str(e)}, 502
    return {"matches": matches, "count": len(matches)}


@app.route("/api/matches/update-from-ea", methods=["POST"])
@require_login
def update_match_from_ea():
    data = json_body()
    match_id = pick(data, "match_id", "matchId")
    ea_match_id = pick(data, "ea_match_id", "eaMatchId")
    if match_id is None or ea_match_id is None:
        return {"error": "match_id and ea_match_id are required"}, 400
    match = get_or_404(Match, to_int(match_id, "match_id"), "Match")

    user = current_user()
    if not (check_admin_auth() or can_manage_team(user, match.home_team_id)
            or can_manage_team(user, match.away_team_id)):
        return {"error": "Only admins or managers of the teams involved can update this match"}, 403

    home_club = match.home_team.ea_club_id if match.home_team else None
    away_club = match.away_team.ea_club_id if match.away_team else None
    if not home_club or not away_club:
        return {"error": "Both teams need an EA club id"}, 400

    try:
        candidates = recent_matches(EAClient(), home_club, away_club, limit=50)
        ea_match = next((m for m in candidates if str(m.get("matchId")) == str(ea_match_id)), None)
        if ea_match is None:
            return {"error": "EA match not found for these clubs"}, 404
        home_score, away_score, overtime = extract_scores(ea_match, home_club, away_club)
    except EAAPIError as e:
        app.logger.error(f"[EA] update-from-ea failed for match {match.id}: {e}")
        return {"error": str(e)}, 502

    old = match.to_dict()
    match.home_score = home_score
    match.away_score = away_score
    match.has_overtime = overtime
    match.status = "completed"
    match.ea_match_id = str(ea_match_id)
    match.updated_at = datetime.utcnow()
    audit("UPDATE", "matches", match.id, old, match.to_dict())
    db.session.commit()
    return {"success": True, "match": match.to_dict()}


# ============================================================================
# MIGRATIONS
# ============================================================================

@app.route("/api/admin/migrations")
@require_admin_auth
def admin_list_migrations():
    return {"migrations": list_migrations()}


@app.route("/api/admin/run-migration/<name>", methods=["POST"])
@require_admin_auth
def admin_run_migration(name):
    if name not in MIGRATIONS:
        return {"error": f"Unknown migration: {name}"}, 404
    try:
        result = run_migration(name)
    except MigrationError as e:
        db.session.rollback()
        app.logger.error(f"[MIGRATION] {name} failed: {e} ({'; '.join(e.attempts)})")
        return {"error": str(e), "attempts": e.attempts}, 500

    if result["status"] == "applied":
        audit("MIGRATION", "schema_migrations", name, None, {"steps": result["steps"]})
        db.session.commit()
    return {"success": True, **result}


# Error Handlers for Production
@app.errorhandler(404)
def page_not_found(e):
    """Handle 404 errors"""
    return {"error": "Not found"}, 404


@app.errorhandler(500)
def internal_server_error(e):
    """Handle 500 errors"""
    db.session.rollback()
    return {"error": "Internal server error"}, 500


# Production Configuration
def setup_production():
    """Setup production-specific configurations"""
    if not app.debug:
        logging.basicConfig(
            level=logging.INFO,
            format='%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
        )
        app.logger.setLevel(logging.INFO)
        app.logger.info('Chel League Hub startup')


setup_production()


# Lazy database initialization - only run when needed
def init_db():
    """Initialize database tables if needed (safe for existing databases)"""
    try:
        from sqlalchemy import inspect
        inspector = inspect(db.engine)
        existing_tables = inspector.get_table_names()

        # Only create tables if database is empty
        if not existing_tables:
            db.create_all()
            app.logger.info("Database tables created")
        else:
            app.logger.info(f"Database already initialized with {len(existing_tables)} tables")
        return True
    except SQLAlchemyError as e:
        app.logger.error(f"Database initialization failed: {e}")
        app.logger.error("Application will continue but database features may not work")
        return False


# Initialize DB on first request (non-blocking for health checks)
_db_initialized = False
_db_available = True


@app.before_request
def ensure_db_initialized():
    """Ensure database is initialized before processing requests"""
    global _db_initialized, _db_available

    # Skip health check - it must work without database
    if request.endpoint == 'health':
        return

    if not _db_initialized:
        _db_available = init_db()
        _db_initialized = True

        if not _db_available:
            app.logger.warning("Database not available - some features will not work")


if __name__ == "__main__":
    # Development mode only
    port = int(os.environ.get("PORT") or 5000)
    debug = os.environ.get("FLASK_ENV") == "development"
    app.run(host="0.0.0.0", port=port, debug=debug)
