from datetime import datetime

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def _iso(value):
    return value.isoformat() if value else None


class User(db.Model):
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, index=True, nullable=False)
    password_hash = db.Column(db.String(256))
    gamer_tag_id = db.Column(db.String(100), nullable=False)
    discord_name = db.Column(db.String(100))
    discord_id = db.Column(db.String(40), index=True)
    primary_position = db.Column(db.String(40))
    secondary_position = db.Column(db.String(40))
    console = db.Column(db.String(20))
    avatar_url = db.Column(db.String(300))

    is_active = db.Column(db.Boolean, default=True)
    email_verified = db.Column(db.Boolean, default=False)

    # Moderation
    is_banned = db.Column(db.Boolean, default=False)
    ban_reason = db.Column(db.String(300))
    ban_expires_at = db.Column(db.DateTime, nullable=True)  # None = permanent

    registration_ip = db.Column(db.String(64))
    last_login_ip = db.Column(db.String(64))
    last_login_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    roles = db.relationship('UserRole', backref='user', lazy=True, cascade='all, delete-orphan')
    player = db.relationship('Player', backref='user', uselist=False)

    @property
    def role_names(self):
        return [r.role for r in self.roles]

    def ban_active(self, now=None):
        if not self.is_banned:
            return False
        if self.ban_expires_at is None:
            return True
        return self.ban_expires_at > (now or datetime.utcnow())

    def to_dict(self):
        return {
            'id': self.id,
            'email': self.email,
            'gamer_tag_id': self.gamer_tag_id,
            'discord_name': self.discord_name,
            'discord_id': self.discord_id,
            'primary_position': self.primary_position,
            'secondary_position': self.secondary_position,
            'console': self.console,
            'is_active': self.is_active,
            'email_verified': self.email_verified,
            'is_banned': self.is_banned,
            'ban_reason': self.ban_reason,
            'ban_expires_at': _iso(self.ban_expires_at),
            'roles': self.role_names,
            'created_at': _iso(self.created_at),
        }


class UserRole(db.Model):
    __tablename__ = 'user_roles'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    role = db.Column(db.String(50), nullable=False)  # Admin, GM, AGM, Owner, Player, ...
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class Conference(db.Model):
    __tablename__ = 'conferences'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    color = db.Column(db.String(20), default="#6B7280")
    description = db.Column(db.String(300))

    def to_dict(self):
        return {'id': self.id, 'name': self.name, 'color': self.color, 'description': self.description}


class Season(db.Model):
    __tablename__ = 'seasons'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    is_active = db.Column(db.Boolean, default=False)
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'is_active': self.is_active,
            'start_date': _iso(self.start_date),
            'end_date': _iso(self.end_date),
        }


class Team(db.Model):
    __tablename__ = 'teams'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    logo_url = db.Column(db.String(300))
    conference_id = db.Column(db.Integer, db.ForeignKey('conferences.id'), nullable=True)
    is_active = db.Column(db.Boolean, default=True)
    discord_role_id = db.Column(db.String(40))
    ea_club_id = db.Column(db.String(40))
    salary_cap = db.Column(db.Integer, nullable=True)  # None = league default

    # Cached standings (rewritten by sync-standings)
    wins = db.Column(db.Integer, default=0)
    losses = db.Column(db.Integer, default=0)
    otl = db.Column(db.Integer, default=0)
    points = db.Column(db.Integer, default=0)
    goals_for = db.Column(db.Integer, default=0)
    goals_against = db.Column(db.Integer, default=0)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    conference = db.relationship('Conference', backref='teams')

    @property
    def games_played(self):
        return self.wins + self.losses + self.otl

    @property
    def goal_differential(self):
        return self.goals_for - self.goals_against

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'logo_url': self.logo_url,
            'conference_id': self.conference_id,
            'discord_role_id': self.discord_role_id,
            'ea_club_id': self.ea_club_id,
        }


class Player(db.Model):
    __tablename__ = 'players'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, unique=True)
    team_id = db.Column(db.Integer, db.ForeignKey('teams.id'), nullable=True)  # None = free agent
    salary = db.Column(db.Integer, default=0)
    role = db.Column(db.String(50), default="Player")
    status = db.Column(db.String(20), default="active")
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    team = db.relationship('Team', backref='players')

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'gamer_tag_id': self.user.gamer_tag_id if self.user else None,
            'primary_position': self.user.primary_position if self.user else None,
            'team_id': self.team_id,
            'salary': self.salary,
            'role': self.role,
            'status': self.status,
        }


class Match(db.Model):
    __tablename__ = 'matches'

    id = db.Column(db.Integer, primary_key=True)
    season_id = db.Column(db.Integer, db.ForeignKey('seasons.id'), nullable=True)
    home_team_id = db.Column(db.Integer, db.ForeignKey('teams.id'), nullable=False)
    away_team_id = db.Column(db.Integer, db.ForeignKey('teams.id'), nullable=False)
    home_score = db.Column(db.Integer, default=0)
    away_score = db.Column(db.Integer, default=0)
    match_date = db.Column(db.DateTime, nullable=False)
    status = db.Column(db.String(20), default="scheduled")  # scheduled, in_progress, completed
    has_overtime = db.Column(db.Boolean, default=False)
    has_shootout = db.Column(db.Boolean, default=False)
    period_scores = db.Column(db.JSON, nullable=True)  # [{"period": 1, "home": 1, "away": 0}, ...]
    featured = db.Column(db.Boolean, default=False)
    ea_match_id = db.Column(db.String(40))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    home_team = db.relationship('Team', foreign_keys=[home_team_id])
    away_team = db.relationship('Team', foreign_keys=[away_team_id])

    def involves(self, team_id):
        return team_id in (self.home_team_id, self.away_team_id)

    def to_dict(self):
        return {
            'id': self.id,
            'season_id': self.season_id,
            'home_team_id': self.home_team_id,
            'away_team_id': self.away_team_id,
            'home_team': self.home_team.name if self.home_team else None,
            'away_team': self.away_team.name if self.away_team else None,
            'home_score': self.home_score,
            'away_score': self.away_score,
            'match_date': _iso(self.match_date),
            'status': self.status,
            'has_overtime': self.has_overtime,
            'has_shootout': self.has_shootout,
            'period_scores': self.period_scores,
            'featured': self.featured,
            'ea_match_id': self.ea_match_id,
        }


class GameAvailability(db.Model):
    __tablename__ = 'game_availability'
    __table_args__ = (db.UniqueConstraint('match_id', 'user_id', name='uq_game_availability_match_user'),)

    id = db.Column(db.Integer, primary_key=True)
    match_id = db.Column(db.Integer, db.ForeignKey('matches.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    status = db.Column(db.String(20), nullable=False)  # available, unavailable, injury_reserve
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class InjuryReserve(db.Model):
    __tablename__ = 'injury_reserves'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    team_id = db.Column(db.Integer, db.ForeignKey('teams.id'), nullable=False, index=True)
    season_id = db.Column(db.Integer, db.ForeignKey('seasons.id'), nullable=True)
    week_start_date = db.Column(db.Date, nullable=False)
    week_end_date = db.Column(db.Date, nullable=False)
    week_number = db.Column(db.Integer, nullable=True)
    status = db.Column(db.String(20), default="active")  # active, completed, cancelled
    reason = db.Column(db.String(300))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = db.relationship('User')
    team = db.relationship('Team')

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'team_id': self.team_id,
            'season_id': self.season_id,
            'week_start_date': _iso(self.week_start_date),
            'week_end_date': _iso(self.week_end_date),
            'week_number': self.week_number,
            'status': self.status,
            'reason': self.reason,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
            'users': {'id': self.user.id, 'gamer_tag_id': self.user.gamer_tag_id, 'email': self.user.email} if self.user else None,
            'teams': {'id': self.team.id, 'name': self.team.name, 'logo_url': self.team.logo_url} if self.team else None,
        }


class PlayerBid(db.Model):
    __tablename__ = 'player_bidding'

    id = db.Column(db.Integer, primary_key=True)
    player_id = db.Column(db.Integer, db.ForeignKey('players.id'), nullable=False, index=True)
    team_id = db.Column(db.Integer, db.ForeignKey('teams.id'), nullable=False, index=True)
    bid_amount = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(20), default="Active")  # Active, Won, Outbid, Cancelled
    finalized = db.Column(db.Boolean, default=False)
    bid_expires_at = db.Column(db.DateTime, nullable=False)
    placed_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    player = db.relationship('Player')
    team = db.relationship('Team')

    def to_dict(self):
        return {
            'id': self.id,
            'player_id': self.player_id,
            'team_id': self.team_id,
            'team_name': self.team.name if self.team else None,
            'player_name': self.player.user.gamer_tag_id if self.player and self.player.user else None,
            'bid_amount': self.bid_amount,
            'status': self.status,
            'finalized': self.finalized,
            'bid_expires_at': _iso(self.bid_expires_at),
            'created_at': _iso(self.created_at),
        }


class TransferOffer(db.Model):
    __tablename__ = 'player_transfer_offers'

    id = db.Column(db.Integer, primary_key=True)
    player_id = db.Column(db.Integer, db.ForeignKey('players.id'), nullable=False, index=True)
    from_team_id = db.Column(db.Integer, db.ForeignKey('teams.id'), nullable=False)
    to_team_id = db.Column(db.Integer, db.ForeignKey('teams.id'), nullable=False)
    offer_amount = db.Column(db.Integer, default=0)
    status = db.Column(db.String(20), default="pending")  # pending, accepted, rejected, expired, superseded
    expires_at = db.Column(db.DateTime, nullable=False)
    created_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    player = db.relationship('Player')
    from_team = db.relationship('Team', foreign_keys=[from_team_id])
    to_team = db.relationship('Team', foreign_keys=[to_team_id])

    def to_dict(self):
        return {
            'id': self.id,
            'player_id': self.player_id,
            'player_name': self.player.user.gamer_tag_id if self.player and self.player.user else None,
            'from_team_id': self.from_team_id,
            'from_team': self.from_team.name if self.from_team else None,
            'to_team_id': self.to_team_id,
            'to_team': self.to_team.name if self.to_team else None,
            'offer_amount': self.offer_amount,
            'status': self.status,
            'expires_at': _iso(self.expires_at),
            'created_at': _iso(self.created_at),
        }


class PlayerTransfer(db.Model):
    __tablename__ = 'player_transfers'

    id = db.Column(db.Integer, primary_key=True)
    player_id = db.Column(db.Integer, db.ForeignKey('players.id'), nullable=False)
    from_team_id = db.Column(db.Integer, db.ForeignKey('teams.id'), nullable=True)  # None = free agent signing
    to_team_id = db.Column(db.Integer, db.ForeignKey('teams.id'), nullable=False)
    transfer_amount = db.Column(db.Integer, default=0)
    kind = db.Column(db.String(20), default="transfer")  # transfer, signing, bid
    transfer_date = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'player_id': self.player_id,
            'from_team_id': self.from_team_id,
            'to_team_id': self.to_team_id,
            'transfer_amount': self.transfer_amount,
            'kind': self.kind,
            'transfer_date': _iso(self.transfer_date),
        }


class News(db.Model):
    __tablename__ = 'news'

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    content = db.Column(db.Text, nullable=False)
    author_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    published = db.Column(db.Boolean, default=False)
    featured = db.Column(db.Boolean, default=False)
    image_url = db.Column(db.String(300))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'content': self.content,
            'author_id': self.author_id,
            'published': self.published,
            'featured': self.featured,
            'image_url': self.image_url,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class Notification(db.Model):
    __tablename__ = 'notifications'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text, nullable=False)
    link = db.Column(db.String(200))
    read = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'message': self.message,
            'link': self.link,
            'read': self.read,
            'created_at': _iso(self.created_at),
        }


class AuditLog(db.Model):
    __tablename__ = 'audit_logs'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=True, index=True)
    action = db.Column(db.String(50), nullable=False, index=True)  # INSERT, UPDATE, DELETE, ...
    table_name = db.Column(db.String(60), index=True)
    record_id = db.Column(db.String(60))
    old_data = db.Column(db.JSON, nullable=True)
    new_data = db.Column(db.JSON, nullable=True)
    ip_address = db.Column(db.String(64))
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'action': self.action,
            'table_name': self.table_name,
            'record_id': self.record_id,
            'old_data': self.old_data,
            'new_data': self.new_data,
            'ip_address': self.ip_address,
            'created_at': _iso(self.created_at),
        }


class VerificationToken(db.Model):
    __tablename__ = 'verification_tokens'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    email = db.Column(db.String(120), nullable=False)
    token = db.Column(db.String(64), unique=True, index=True, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    used_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class VerificationLog(db.Model):
    __tablename__ = 'verification_logs'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=True)
    email = db.Column(db.String(120))
    status = db.Column(db.String(30))  # email_sent, email_failed, verified, manual_verified
    details = db.Column(db.String(500))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class SystemSetting(db.Model):
    __tablename__ = 'system_settings'

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(60), unique=True, nullable=False)
    value = db.Column(db.JSON)
    updated_by = db.Column(db.Integer, nullable=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class DiscordBotConfig(db.Model):
    __tablename__ = 'discord_bot_config'

    id = db.Column(db.Integer, primary_key=True)
    guild_id = db.Column(db.String(40), nullable=False)
    bot_token = db.Column(db.String(200), nullable=False)
    registered_role_id = db.Column(db.String(40))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class SchemaMigration(db.Model):
    __tablename__ = 'schema_migrations'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    applied_at = db.Column(db.DateTime, default=datetime.utcnow)
    details = db.Column(db.Text)
