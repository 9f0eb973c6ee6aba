import os, sqlite3
from datetime import datetime, timezone

from imagechat import config

def db():
    conn = sqlite3.connect(config.DATABASE_PATH)
    conn.row_factory = sqlite3.Row
    return conn

def now_iso() -> str:
    # microsecond precision keeps created_at ordering equal to insertion order in practice;
    # readers still break ties on id
    return datetime.now(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")

def init_db():
    os.makedirs(os.path.dirname(os.path.abspath(config.DATABASE_PATH)), exist_ok=True)
    with db() as conn:
        c = conn.cursor()
        c.execute("""CREATE TABLE IF NOT EXISTS conversations(
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT,
            title TEXT NOT NULL DEFAULT 'New Conversation',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )""")
        c.execute("""CREATE TABLE IF NOT EXISTS messages(
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            conversation_id INTEGER NOT NULL REFERENCES conversations(id),
            role TEXT NOT NULL,     -- 'user' | 'model'
            content TEXT NOT NULL DEFAULT '',
            has_image INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        )""")
        c.execute("""CREATE TABLE IF NOT EXISTS images(
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            message_id INTEGER NOT NULL REFERENCES messages(id),
            storage_path TEXT NOT NULL,
            original_path TEXT,     -- set only for the conversation's original image
            created_at TEXT NOT NULL
        )""")
        c.execute("CREATE INDEX IF NOT EXISTS ix_conversations_user ON conversations(user_id, updated_at)")
        c.execute("CREATE INDEX IF NOT EXISTS ix_messages_conversation ON messages(conversation_id, created_at)")
        c.execute("CREATE INDEX IF NOT EXISTS ix_images_message ON images(message_id)")
        conn.commit()
