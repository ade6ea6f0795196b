"""
Scheduled Tasks for the league
Handles the housekeeping that must happen without anyone clicking a button:
- Awarding free agents whose bidding window has closed
- Expiring transfer offers older than their deadline
- Completing injury reserves whose window has passed

Run this script periodically (e.g., via cron or background worker)
"""

from datetime import datetime
from models import db, InjuryReserve
from utils import process_expired_bids as award_expired_bids, expire_transfer_offers as expire_offers
from app import app


def process_expired_bids():
    """Award each player with an expired bidding window to the highest bidder."""
    with app.app_context():
        result = award_expired_bids()
        print(f"[BIDDING] {result['message']}")
        for detail in result["details"]:
            print(f"   ✅ {detail['playerName']} -> {detail['winningTeam']} (${detail['winningAmount']:,})")
        for error in result["errors"]:
            print(f"   ❌ {error}")
        return result


def expire_transfer_offers():
    with app.app_context():
        expired = expire_offers()
        print(f"[TRANSFERS] Expired {expired} transfer offers")
        return expired


def complete_finished_injury_reserves():
    """Active injury reserves whose end date has passed become completed."""
    with app.app_context():
        today = datetime.utcnow().date()
        finished = InjuryReserve.query.filter(
            InjuryReserve.status == "active",
            InjuryReserve.week_end_date < today,
        ).all()
        for reserve in finished:
            reserve.status = "completed"
            reserve.updated_at = datetime.utcnow()
        db.session.commit()
        print(f"[INJURY RESERVE] Completed {len(finished)} injury reserves")
        return len(finished)


if __name__ == "__main__":
    print("Running all scheduled tasks...")
    process_expired_bids()
    expire_transfer_offers()
    complete_finished_injury_reserves()
