from datetime import datetime

import pytest

from models import db, InjuryReserve, GameAvailability, AuditLog


@pytest.fixture
def roster(make_team, make_user, make_match):
    wolves = make_team("Wolves")
    bears = make_team("Bears")
    manager = make_user(roles=("Player", "GM"), team=wolves)
    skater = make_user(team=wolves)
    in_window = make_match(wolves, bears, match_date=datetime(2026, 3, 4, 20, 0))
    outside = make_match(bears, wolves, match_date=datetime(2026, 3, 20, 20, 0))
    return {"team": wolves, "other": bears, "manager": manager, "skater": skater,
            "in_window": in_window, "outside": outside}


def _payload(roster, **overrides):
    data = {"userId": roster["skater"].id, "teamId": roster["team"].id,
            "weekStartDate": "2026-03-02", "weekEndDate": "2026-03-08"}
    data.update(overrides)
    return data


def test_requires_login(client, roster):
    resp = client.post("/api/injury-reserves", json=_payload(roster))
    assert resp.status_code == 401


def test_manager_places_player_on_reserve(client, login, roster):
    login(roster["manager"])
    resp = client.post("/api/injury-reserves", json=_payload(roster, reason="Broken stick hand"))
    assert resp.status_code == 201
    body = resp.get_json()
    assert body["injuryReserve"]["status"] == "active"
    assert body["injuryReserve"]["users"]["gamer_tag_id"] == roster["skater"].gamer_tag_id
    assert body["gamesMarked"] == 1

    availability = GameAvailability.query.filter_by(user_id=roster["skater"].id).all()
    assert [(a.match_id, a.status) for a in availability] == [(roster["in_window"].id, "injury_reserve")]
    assert AuditLog.query.filter_by(table_name="injury_reserves", action="INSERT").count() == 1


def test_snake_case_payload_is_accepted(client, login, roster):
    login(roster["manager"])
    resp = client.post("/api/injury-reserves", json={
        "user_id": roster["skater"].id, "team_id": roster["team"].id,
        "week_start_date": "2026-03-02", "week_end_date": "2026-03-08",
    })
    assert resp.status_code == 201


def test_missing_fields_and_bad_order(client, login, roster):
    login(roster["manager"])
    assert client.post("/api/injury-reserves", json={"userId": roster["skater"].id}).status_code == 400
    resp = client.post("/api/injury-reserves", json=_payload(roster, weekEndDate="2026-03-02"))
    assert resp.status_code == 400
    resp = client.post("/api/injury-reserves", json=_payload(roster, weekStartDate="March 2nd"))
    assert resp.status_code == 400


def test_overlapping_reserve_is_rejected(client, login, roster):
    login(roster["manager"])
    assert client.post("/api/injury-reserves", json=_payload(roster)).status_code == 201
    resp = client.post("/api/injury-reserves", json=_payload(roster, weekStartDate="2026-03-08",
                                                            weekEndDate="2026-03-15"))
    assert resp.status_code == 409


def test_adjacent_reserve_is_allowed(client, login, roster):
    login(roster["manager"])
    assert client.post("/api/injury-reserves", json=_payload(roster)).status_code == 201
    resp = client.post("/api/injury-reserves", json=_payload(roster, weekStartDate="2026-03-09",
                                                            weekEndDate="2026-03-15"))
    assert resp.status_code == 201


def test_player_must_be_on_team(client, login, roster, make_user):
    login(roster["manager"])
    stranger = make_user()
    resp = client.post("/api/injury-reserves", json=_payload(roster, userId=stranger.id))
    assert resp.status_code == 404


def test_other_teams_manager_is_forbidden(client, login, roster, make_user):
    rival = make_user(roles=("Player", "Owner"), team=roster["other"])
    login(rival)
    resp = client.post("/api/injury-reserves", json=_payload(roster))
    assert resp.status_code == 403


def test_plain_player_is_forbidden(client, login, roster):
    login(roster["skater"])
    resp = client.post("/api/injury-reserves", json=_payload(roster))
    assert resp.status_code == 403


def test_list_filters(client, login, roster):
    login(roster["manager"])
    client.post("/api/injury-reserves", json=_payload(roster))
    client.post("/api/injury-reserves", json=_payload(roster, weekStartDate="2026-04-06",
                                                       weekEndDate="2026-04-12"))

    data = client.get(f"/api/injury-reserves?teamId={roster['team'].id}").get_json()
    assert len(data["injuryReserves"]) == 2

    data = client.get("/api/injury-reserves?weekStart=2026-03-05&weekEnd=2026-03-06").get_json()
    assert [r["week_start_date"] for r in data["injuryReserves"]] == ["2026-03-02"]

    reserve = InjuryReserve.query.filter_by(week_start_date=datetime(2026, 4, 6).date()).first()
    reserve.status = "completed"
    db.session.commit()
    assert len(client.get("/api/injury-reserves").get_json()["injuryReserves"]) == 1
    assert len(client.get("/api/injury-reserves?status=all").get_json()["injuryReserves"]) == 2


def test_update_rechecks_overlap_excluding_itself(client, login, roster):
    login(roster["manager"])
    first = client.post("/api/injury-reserves", json=_payload(roster)).get_json()["injuryReserve"]
    client.post("/api/injury-reserves", json=_payload(roster, weekStartDate="2026-03-16",
                                                       weekEndDate="2026-03-22"))

    resp = client.put("/api/injury-reserves", json={"id": first["id"], "weekEndDate": "2026-03-10"})
    assert resp.status_code == 200
    assert resp.get_json()["injuryReserve"]["week_end_date"] == "2026-03-10"

    resp = client.put("/api/injury-reserves", json={"id": first["id"], "weekEndDate": "2026-03-17"})
    assert resp.status_code == 409

    assert client.put("/api/injury-reserves", json={"weekEndDate": "2026-03-17"}).status_code == 400
    assert client.put("/api/injury-reserves", json={"id": 999}).status_code == 404


def test_delete_clears_availability(client, login, roster):
    login(roster["manager"])
    reserve = client.post("/api/injury-reserves", json=_payload(roster)).get_json()["injuryReserve"]

    resp = client.delete(f"/api/injury-reserves?id={reserve['id']}")
    assert resp.status_code == 200
    assert db.session.get(InjuryReserve, reserve["id"]) is None
    assert GameAvailability.query.filter_by(user_id=roster["skater"].id).count() == 0
    assert client.delete("/api/injury-reserves").status_code == 400
