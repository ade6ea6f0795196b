"""
Database Initialization Script for Production
Creates all tables in the database and seeds the league switches. Run this on first deployment.

Usage: python init_db.py
"""

from dotenv import load_dotenv
from app import app, db
from utils import get_setting, set_setting, DEFAULT_BIDDING_DURATION

load_dotenv()

DEFAULT_SETTINGS = {
    "bidding_enabled": False,
    "bidding_duration": DEFAULT_BIDDING_DURATION,
    "transfers_enabled": True,
}


def init_database():
    """Initialize the database with all tables"""
    with app.app_context():
        print("🔧 Initializing database...")
        print(f"📍 Database URI: {app.config['SQLALCHEMY_DATABASE_URI'][:50]}...")

        # Create all tables
        db.create_all()

        for key, value in DEFAULT_SETTINGS.items():
            if get_setting(key) is None:
                set_setting(key, value)
                print(f"   ⚙️  {key} = {value}")
        db.session.commit()

        print("✅ Database initialized successfully!")
        print("📋 Tables created:")
        for table in sorted(db.metadata.tables):
            print(f"   - {table}")


if __name__ == "__main__":
    init_database()
