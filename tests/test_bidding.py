from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

import utils
from models import db, Player, PlayerBid, PlayerTransfer, Notification, AuditLog
from utils import (
    LeagueRuleError, SALARY_CAP, ROSTER_LIMIT, place_bid, process_expired_bids, force_end_bids,
    minimum_bid, get_setting,
)


@pytest.fixture
def league(make_team, make_user):
    wolves = make_team("Wolves")
    bears = make_team("Bears")
    wolves_gm = make_user(roles=("Player", "GM"), team=wolves, salary=1_000_000)
    bears_gm = make_user(roles=("Player", "GM"), team=bears, salary=1_000_000)
    free_agent = make_user(gamer_tag="FreeAgent99", salary=750_000)
    return {"wolves": wolves, "bears": bears, "wolves_gm": wolves_gm, "bears_gm": bears_gm,
            "free_agent": free_agent.player}


def _bid(client, league, team="wolves", amount=1_000_000):
    return client.post("/api/bids", json={"player_id": league["free_agent"].id,
                                          "team_id": league[team].id, "amount": amount})


def test_bidding_is_off_by_default(client, login, league):
    login(league["wolves_gm"])
    resp = _bid(client, league)
    assert resp.status_code == 403
    assert "disabled" in resp.get_json()["error"]


def test_manager_places_bid(client, login, league, bidding_open):
    login(league["wolves_gm"])
    resp = _bid(client, league)
    assert resp.status_code == 201
    bid = resp.get_json()["bid"]
    assert bid["status"] == "Active"
    assert bid["bid_amount"] == 1_000_000


def test_only_the_teams_manager_can_bid(client, login, league, bidding_open):
    login(league["bears_gm"])
    assert _bid(client, league, team="wolves").status_code == 403


def test_bid_must_clear_the_increment(client, login, league, bidding_open):
    login(league["wolves_gm"])
    assert _bid(client, league, amount=1_000_000).status_code == 201

    login(league["bears_gm"])
    resp = _bid(client, league, team="bears", amount=1_200_000)
    assert resp.status_code == 400
    assert "$1,250,000" in resp.get_json()["error"]
    assert _bid(client, league, team="bears", amount=1_250_000).status_code == 201


def test_leading_team_cannot_outbid_itself(client, login, league, bidding_open):
    login(league["wolves_gm"])
    assert _bid(client, league).status_code == 201
    assert _bid(client, league, amount=2_000_000).status_code == 409


def test_minimum_respects_player_salary():
    player = Player(salary=0)
    assert minimum_bid(player) == 750_000
    player.salary = 900_000
    assert minimum_bid(player) == 900_000


def test_bid_over_the_cap_is_rejected(client, login, league, bidding_open):
    login(league["wolves_gm"])
    resp = _bid(client, league, amount=SALARY_CAP)
    assert resp.status_code == 400
    assert "salary cap" in resp.get_json()["error"]


def test_full_roster_cannot_bid(client, login, league, make_user, bidding_open):
    for _ in range(ROSTER_LIMIT - 1):
        make_user(team=league["wolves"], salary=100_000)
    login(league["wolves_gm"])
    resp = _bid(client, league)
    assert resp.status_code == 400
    assert "roster is full" in resp.get_json()["error"]


def test_rostered_player_is_not_biddable(app, league, bidding_open):
    rostered = league["bears_gm"].player
    with pytest.raises(LeagueRuleError) as excinfo:
        place_bid(rostered, league["wolves"], 1_000_000)
    assert excinfo.value.status_code == 409


def test_concurrent_bid_is_detected(app, league, bidding_open):
    """A bid landing between validation and insert is reported as a conflict."""
    player = league["free_agent"]
    rival = PlayerBid(player_id=player.id, team_id=league["bears"].id, bid_amount=900_000,
                      bid_expires_at=datetime.utcnow() + timedelta(hours=4))
    db.session.add(rival)
    db.session.commit()
    reads = iter([None, rival])

    with patch.object(utils, "highest_active_bid", side_effect=lambda _pid: next(reads)):
        with pytest.raises(LeagueRuleError) as excinfo:
            place_bid(player, league["wolves"], 1_000_000)
    assert excinfo.value.status_code == 409


def test_process_expired_bids_awards_highest(app, league, bidding_open):
    player = league["free_agent"]
    past = datetime.utcnow() - timedelta(minutes=5)
    low = PlayerBid(player_id=player.id, team_id=league["wolves"].id, bid_amount=1_000_000, bid_expires_at=past)
    high = PlayerBid(player_id=player.id, team_id=league["bears"].id, bid_amount=1_500_000, bid_expires_at=past)
    db.session.add_all([low, high])
    db.session.commit()

    result = process_expired_bids()

    assert result["processed"] == 1
    assert result["details"][0]["winningTeam"] == "Bears"
    player = db.session.get(Player, player.id)
    assert player.team_id == league["bears"].id
    assert player.salary == 1_500_000
    assert db.session.get(PlayerBid, high.id).status == "Won"
    assert db.session.get(PlayerBid, low.id).status == "Outbid"
    assert PlayerTransfer.query.filter_by(player_id=player.id, kind="bid").count() == 1
    assert Notification.query.filter_by(user_id=player.user_id).count() == 1


def test_live_top_bid_keeps_the_window_open(app, league, bidding_open):
    player = league["free_agent"]
    now = datetime.utcnow()
    early = PlayerBid(player_id=player.id, team_id=league["wolves"].id, bid_amount=1_000_000,
                      bid_expires_at=now - timedelta(minutes=5), created_at=now - timedelta(hours=4))
    late = PlayerBid(player_id=player.id, team_id=league["bears"].id, bid_amount=1_250_000,
                     bid_expires_at=now + timedelta(hours=3), created_at=now - timedelta(hours=1))
    db.session.add_all([early, late])
    db.session.commit()

    assert process_expired_bids()["processed"] == 0
    assert db.session.get(Player, player.id).team_id is None
    assert db.session.get(PlayerBid, late.id).status == "Active"

    result = process_expired_bids(now=now + timedelta(hours=4))
    assert result["details"][0]["winningTeam"] == "Bears"
    assert db.session.get(Player, player.id).team_id == league["bears"].id
    assert db.session.get(PlayerBid, early.id).status == "Outbid"

def test_unexpired_bids_are_left_alone(app, league):
    player = league["free_agent"]
    db.session.add(PlayerBid(player_id=player.id, team_id=league["wolves"].id, bid_amount=1_000_000,
                             bid_expires_at=datetime.utcnow() + timedelta(hours=1)))
    db.session.commit()
    assert process_expired_bids()["processed"] == 0
    assert force_end_bids()["processed"] == 1


def test_free_agents_listing(client, league, bidding_open):
    db.session.add(PlayerBid(player_id=league["free_agent"].id, team_id=league["wolves"].id,
                             bid_amount=1_000_000, bid_expires_at=datetime.utcnow() + timedelta(hours=1)))
    db.session.commit()
    data = client.get("/api/free-agents").get_json()
    assert data["bidding_enabled"] is True
    assert [p["gamer_tag_id"] for p in data["free_agents"]] == ["FreeAgent99"]
    assert data["free_agents"][0]["current_bid"]["team_name"] == "Wolves"
    assert data["free_agents"][0]["minimum_bid"] == 1_250_000


def test_admin_bidding_controls(client, login_admin, league):
    login_admin()
    assert client.get("/api/admin/bidding").get_json() == {"enabled": False}
    assert client.post("/api/admin/bidding", json={"enabled": "yes"}).status_code == 400
    assert client.post("/api/admin/bidding", json={"enabled": True}).get_json()["enabled"] is True
    assert get_setting("bidding_enabled") is True

    assert client.get("/api/admin/bidding/duration").get_json() == {"duration": 14_400}
    assert client.post("/api/admin/bidding/duration", json={"duration": 7200}).status_code == 200
    assert get_setting("bidding_duration") == 7200


def test_admin_extend_and_cancel(client, login_admin, league):
    expires = datetime(2026, 5, 1, 12, 0)
    bid = PlayerBid(player_id=league["free_agent"].id, team_id=league["wolves"].id,
                    bid_amount=1_000_000, bid_expires_at=expires)
    db.session.add(bid)
    db.session.commit()
    login_admin()

    resp = client.post(f"/api/admin/bids/{bid.id}/extend", json={})
    assert resp.status_code == 200
    assert db.session.get(PlayerBid, bid.id).bid_expires_at == expires + timedelta(hours=24)

    assert client.post(f"/api/admin/bids/{bid.id}/cancel").status_code == 200
    assert db.session.get(PlayerBid, bid.id).status == "Cancelled"
    assert client.post(f"/api/admin/bids/{bid.id}/cancel").status_code == 409


def test_admin_routes_need_admin(client, login, league):
    login(league["wolves_gm"])
    assert client.get("/api/admin/bidding").status_code == 403
    client.post("/api/auth/logout")
    assert client.get("/api/admin/bidding").status_code == 401


def test_bidding_recap(client, login_admin, league):
    login_admin()
    teams = client.get("/api/admin/bidding-recap").get_json()["teams"]
    wolves = next(t for t in teams if t["team_name"] == "Wolves")
    assert wolves["current_salary"] == 1_000_000
    assert wolves["cap_space_remaining"] == SALARY_CAP - 1_000_000
    assert wolves["roster_size"] == 1


def test_cron_requires_secret(client, league):
    assert client.post("/api/cron/process-expired-bids").status_code == 401
    resp = client.post("/api/cron/process-expired-bids", headers={"Authorization": "Bearer cron-secret"})
    assert resp.status_code == 200
    assert resp.get_json()["processed"] == 0


def test_force_end_bids_route(client, login, login_admin, league):
    player = league["free_agent"]
    db.session.add(PlayerBid(player_id=player.id, team_id=league["wolves"].id, bid_amount=1_000_000,
                             bid_expires_at=datetime.utcnow() + timedelta(hours=2)))
    db.session.commit()

    login(league["wolves_gm"])
    assert client.post("/api/admin/force-end-bids").status_code == 403

    login_admin()
    resp = client.post("/api/admin/force-end-bids")
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["processed"] == 1
    assert data["details"][0]["winningTeam"] == "Wolves"
    assert db.session.get(Player, player.id).team_id == league["wolves"].id
    assert AuditLog.query.filter_by(action="FORCE_END_BIDS").count() == 1

    assert client.post("/api/admin/force-end-bids").get_json()["processed"] == 0
