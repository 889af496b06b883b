from database import Database
from config import DATABASE_URL
from errors import StoreError


def init_database(db_url=DATABASE_URL):
    """Initialize database and create default settings"""
    db = Database(db_url)
    print("✅ Database tables created successfully!")

    try:
        if db.get_setting("allowScreenCapture") is None:
            db.set_setting("allowScreenCapture", False)
            print("✅ Default settings created successfully!")
    except StoreError as e:
        print(f"❌ Error creating default settings: {e}")
    return db


if __name__ == "__main__":
    print("Initializing database...")
    init_database()
    print("Done!")
