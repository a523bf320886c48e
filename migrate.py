import sqlite3
import sys

from loguru import logger


def migrate(db_path='gym.db'):
    conn = sqlite3.connect(db_path)
    cur = conn.cursor()
    cur.execute("PRAGMA table_info(trained_days);")
    cols = [r[1] for r in cur.fetchall()]
    if cols and 'completed' not in cols:
        cur.execute("ALTER TABLE trained_days ADD COLUMN completed INTEGER NOT NULL DEFAULT 0;")
        logger.info("Added trained_days.completed")
    if cols and 'rescheduled' not in cols:
        cur.execute("ALTER TABLE trained_days ADD COLUMN rescheduled INTEGER NOT NULL DEFAULT 0;")
        logger.info("Added trained_days.rescheduled")
    cur.execute("PRAGMA table_info(reschedule_history);")
    if not cur.fetchall():
        cur.execute(
            "CREATE TABLE reschedule_history (id INTEGER PRIMARY KEY AUTOINCREMENT, original_date TEXT NOT NULL, new_date TEXT NOT NULL, workout_day INTEGER NOT NULL);"
        )
        logger.info("Created reschedule_history")
    conn.commit()
    conn.close()


if __name__ == '__main__':
    path = sys.argv[1] if len(sys.argv) > 1 else 'gym.db'
    migrate(path)
