import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["ADMIN_PASSWORD"] = "let-me-in"
os.environ["CRON_SECRET"] = "cron-secret"
os.environ["DISCORD_SYNC_DELAY_SECONDS"] = "0"
for key in ("SMTP_SERVER", "SMTP_USERNAME", "SMTP_PASSWORD", "DISCORD_BOT_TOKEN", "DISCORD_GUILD_ID"):
    os.environ.pop(key, None)

from datetime import datetime

import pytest

from app import app as flask_app
from models import db, User, UserRole, Team, Player, Match, Season, Conference
from utils import DEFAULT_PLAYER_SALARY, set_setting


@pytest.fixture
def app():
    flask_app.config.update(TESTING=True)
    with flask_app.app_context():
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_team(app):
    def _make(name="Ice Wolves", conference=None, **kwargs):
        team = Team(name=name, conference_id=conference.id if conference else None, **kwargs)
        db.session.add(team)
        db.session.commit()
        return team
    return _make


@pytest.fixture
def make_conference(app):
    def _make(name="Eastern", color="#1D4ED8"):
        conference = Conference(name=name, color=color)
        db.session.add(conference)
        db.session.commit()
        return conference
    return _make


@pytest.fixture
def make_user(app):
    counter = {"n": 0}

    def _make(email=None, roles=("Player",), team=None, player_role="Player", verified=True,
              salary=DEFAULT_PLAYER_SALARY, discord_id=None, gamer_tag=None):
        counter["n"] += 1
        n = counter["n"]
        user = User(
            email=email or f"player{n}@example.com",
            gamer_tag_id=gamer_tag or f"Skater{n}",
            primary_position="C",
            console="PS5",
            email_verified=verified,
            discord_id=discord_id,
        )
        db.session.add(user)
        db.session.flush()
        for role in roles:
            db.session.add(UserRole(user_id=user.id, role=role))
        db.session.add(Player(user_id=user.id, team_id=team.id if team else None, salary=salary,
                              role=player_role, status="active"))
        db.session.commit()
        return user
    return _make


@pytest.fixture
def make_match(app):
    def _make(home, away, home_score=0, away_score=0, status="scheduled", season=None,
              match_date=None, **kwargs):
        match = Match(
            home_team_id=home.id,
            away_team_id=away.id,
            home_score=home_score,
            away_score=away_score,
            status=status,
            season_id=season.id if season else None,
            match_date=match_date or datetime(2026, 3, 4, 20, 0),
            **kwargs,
        )
        db.session.add(match)
        db.session.commit()
        return match
    return _make


@pytest.fixture
def make_season(app):
    def _make(name="Season 1", is_active=True):
        season = Season(name=name, is_active=is_active)
        db.session.add(season)
        db.session.commit()
        return season
    return _make


@pytest.fixture
def login(client):
    def _login(user):
        with client.session_transaction() as sess:
            sess["user_id"] = user.id
    return _login


@pytest.fixture
def login_admin(client):
    def _login():
        with client.session_transaction() as sess:
            sess["admin_authenticated"] = True
    return _login


@pytest.fixture
def bidding_open(app):
    set_setting("bidding_enabled", True)
    db.session.commit()
