from datetime import datetime, timedelta

from models import db, InjuryReserve, TransferOffer
from scheduled_tasks import complete_finished_injury_reserves, expire_transfer_offers, process_expired_bids


def test_finished_injury_reserves_are_completed(app, make_team, make_user):
    wolves = make_team("Wolves")
    user = make_user(team=wolves)
    today = datetime.utcnow().date()
    past = InjuryReserve(user_id=user.id, team_id=wolves.id, week_start_date=today - timedelta(days=14),
                         week_end_date=today - timedelta(days=7))
    current = InjuryReserve(user_id=user.id, team_id=wolves.id, week_start_date=today - timedelta(days=1),
                            week_end_date=today + timedelta(days=5))
    db.session.add_all([past, current])
    db.session.commit()

    assert complete_finished_injury_reserves() == 1

    db.session.expire_all()
    assert db.session.get(InjuryReserve, past.id).status == "completed"
    assert db.session.get(InjuryReserve, current.id).status == "active"


def test_stale_transfer_offers_expire(app, make_team, make_user):
    wolves, bears = make_team("Wolves"), make_team("Bears")
    player = make_user(team=bears).player
    stale = TransferOffer(player_id=player.id, from_team_id=bears.id, to_team_id=wolves.id,
                          expires_at=datetime.utcnow() - timedelta(days=1))
    fresh = TransferOffer(player_id=player.id, from_team_id=bears.id, to_team_id=wolves.id,
                          expires_at=datetime.utcnow() + timedelta(days=1))
    db.session.add_all([stale, fresh])
    db.session.commit()

    assert expire_transfer_offers() == 1

    db.session.expire_all()
    assert db.session.get(TransferOffer, stale.id).status == "expired"
    assert db.session.get(TransferOffer, fresh.id).status == "pending"


def test_process_expired_bids_with_nothing_to_do(app):
    assert process_expired_bids()["processed"] == 0
