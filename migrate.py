# migrate.py
from config import settings, setup_logging
from database import ensure_post_columns, init_db

if __name__ == "__main__":
    setup_logging()
    print(f"🚀 Running schema migration on {settings['db_path']}...")
    init_db()
    ensure_post_columns()
    print("✅ Migration complete.")
