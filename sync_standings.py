"""
Standings Sync Script
Recomputes wins, losses, OTL, points and goals for every team from completed
matches and writes them onto the teams table.

Usage: python sync_standings.py [season_id]
"""

import sys
from dotenv import load_dotenv
from sqlalchemy.exc import SQLAlchemyError
from app import app, db
from utils import sync_team_standings, LeagueRuleError

load_dotenv()


def sync_standings(season_id=None):
    with app.app_context():
        print("🔄 Syncing team standings from completed matches...")
        print(f"📍 Database URI: {app.config['SQLALCHEMY_DATABASE_URI'][:50]}...")

        try:
            season, standings = sync_team_standings(season_id)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            print(f"❌ Error syncing standings: {e}")
            raise
        except LeagueRuleError as e:
            print(f"❌ {e.message}")
            raise SystemExit(1)

        print(f"\n📅 Season: {season.name if season else 'all matches'}")
        for position, row in enumerate(standings, start=1):
            print(f"   {position:>2}. {row['name']:<30} GP {row['games_played']:>3}  "
                  f"W {row['wins']:>3}  L {row['losses']:>3}  OTL {row['otl']:>3}  PTS {row['points']:>3}")
        print(f"\n✅ Updated {len(standings)} teams")


if __name__ == "__main__":
    sync_standings(int(sys.argv[1]) if len(sys.argv) > 1 else None)
