from types import SimpleNamespace

from models import Team
from utils import calculate_standings


def _team(team_id, name, conference=None):
    return SimpleNamespace(id=team_id, name=name, logo_url=None,
                           conference_id=conference.id if conference else None, conference=conference)


def _match(home, away, home_score, away_score, overtime=False, shootout=False, status="completed"):
    return SimpleNamespace(home_team_id=home, away_team_id=away, home_score=home_score,
                           away_score=away_score, has_overtime=overtime, has_shootout=shootout, status=status)


def test_points_wins_and_overtime_losses():
    teams = [_team(1, "Wolves"), _team(2, "Bears")]
    matches = [
        _match(1, 2, 4, 2),
        _match(2, 1, 3, 2, overtime=True),
        _match(1, 2, 1, 0, shootout=True),
    ]
    rows = {r["id"]: r for r in calculate_standings(teams, matches)}

    assert rows[1]["wins"] == 2
    assert rows[1]["otl"] == 1
    assert rows[1]["losses"] == 0
    assert rows[1]["points"] == 5
    assert rows[2]["wins"] == 1
    assert rows[2]["losses"] == 1
    assert rows[2]["otl"] == 1
    assert rows[2]["points"] == 3
    assert rows[1]["goals_for"] == 7
    assert rows[1]["goals_against"] == 5
    assert rows[1]["games_played"] == 3


def test_unfinished_matches_are_ignored():
    teams = [_team(1, "Wolves"), _team(2, "Bears")]
    rows = calculate_standings(teams, [_match(1, 2, 5, 0, status="scheduled")])
    assert all(r["games_played"] == 0 for r in rows)


def test_level_scores_count_as_otl_for_both():
    teams = [_team(1, "Wolves"), _team(2, "Bears")]
    rows = calculate_standings(teams, [_match(1, 2, 2, 2)])
    assert [r["otl"] for r in rows] == [1, 1]
    assert [r["points"] for r in rows] == [1, 1]


def test_sorted_by_points_then_wins_then_goal_differential():
    teams = [_team(1, "A"), _team(2, "B"), _team(3, "C"), _team(4, "D")]
    matches = [
        _match(1, 4, 1, 0),          # A: W, 2 pts, +1
        _match(2, 4, 6, 0),          # B: W, 2 pts, +6
        _match(4, 3, 1, 0, True),    # C: OTL x2 = 2 pts, 0 wins; D: 2 W = 4 pts
        _match(4, 3, 1, 0, True),
    ]
    order = [r["name"] for r in calculate_standings(teams, matches)]
    assert order == ["D", "B", "A", "C"]


def test_standings_route_groups_by_conference(client, make_conference, make_team, make_match, make_season):
    season = make_season()
    east = make_conference("Eastern")
    wolves = make_team("Wolves", conference=east)
    bears = make_team("Bears")
    make_match(wolves, bears, 3, 1, status="completed", season=season)
    make_match(wolves, bears, 9, 0, status="completed", season=make_season("Old", is_active=False))

    resp = client.get("/api/standings")
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["season"]["name"] == "Season 1"
    assert data["standings"][0]["name"] == "Wolves"
    assert data["standings"][0]["goals_for"] == 3
    names = {c["conference"]["name"]: [t["name"] for t in c["teams"]] for c in data["conferences"]}
    assert names == {"Eastern": ["Wolves"], "No Conference": ["Bears"]}


def test_sync_standings_writes_team_columns(client, login_admin, make_team, make_match, make_season):
    season = make_season()
    wolves = make_team("Wolves")
    bears = make_team("Bears")
    make_match(wolves, bears, 2, 3, status="completed", season=season, has_overtime=True)
    login_admin()

    resp = client.post("/api/admin/sync-standings", json={})
    assert resp.status_code == 200
    assert resp.get_json()["teams_updated"] == 2

    wolves = Team.query.filter_by(name="Wolves").first()
    bears = Team.query.filter_by(name="Bears").first()
    assert (wolves.otl, wolves.points) == (1, 1)
    assert (bears.wins, bears.points, bears.goals_for) == (1, 2, 3)


def test_unknown_season_is_not_found(client, login_admin, make_team, make_match, make_season):
    season = make_season()
    wolves = make_team("Wolves")
    bears = make_team("Bears")
    make_match(wolves, bears, 4, 1, status="completed", season=season)

    assert client.get("/api/standings?season_id=999").status_code == 404
    login_admin()
    assert client.post("/api/admin/sync-standings", json={"season_id": 999}).status_code == 404
    assert Team.query.filter_by(name="Wolves").first().wins == 0
