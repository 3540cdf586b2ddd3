SCHEMA = """
CREATE TABLE IF NOT EXISTS chats (
    jid TEXT PRIMARY KEY,
    name TEXT,
    avatar_base64 TEXT,
    last_message_id TEXT,
    last_message_content TEXT,
    last_message_type TEXT DEFAULT 'text',
    last_message_from TEXT,
    last_message_timestamp INTEGER,
    unread_count INTEGER DEFAULT 0,
    is_archived BOOLEAN DEFAULT FALSE,
    history_baseline_timestamp INTEGER,
    last_sync_timestamp INTEGER,
    sync_status TEXT DEFAULT 'unseen',
    history_complete BOOLEAN DEFAULT FALSE,
    created_at INTEGER DEFAULT (strftime('%s', 'now')),
    updated_at INTEGER DEFAULT (strftime('%s', 'now'))
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT NOT NULL,
    chat_jid TEXT NOT NULL,
    from_me BOOLEAN NOT NULL,
    message_type TEXT DEFAULT 'text',
    content TEXT,
    timestamp INTEGER NOT NULL,
    status TEXT DEFAULT 'sent',
    sender_name TEXT,
    provenance TEXT NOT NULL,
    sync_session TEXT,
    created_at INTEGER DEFAULT (strftime('%s', 'now')),
    PRIMARY KEY (chat_jid, id)
);

CREATE TABLE IF NOT EXISTS contacts (
    jid TEXT PRIMARY KEY,
    name TEXT,
    phone_number TEXT,
    avatar_base64 TEXT,
    is_blocked BOOLEAN DEFAULT FALSE,
    updated_at INTEGER DEFAULT (strftime('%s', 'now'))
);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at INTEGER DEFAULT (strftime('%s', 'now'))
);

CREATE INDEX IF NOT EXISTS idx_messages_chat_timestamp ON messages(chat_jid, timestamp);
CREATE INDEX IF NOT EXISTS idx_messages_timestamp ON messages(timestamp);
CREATE INDEX IF NOT EXISTS idx_chats_last_message ON chats(last_message_timestamp);
"""

PRAGMAS = """
PRAGMA journal_mode = WAL;
PRAGMA synchronous = NORMAL;
PRAGMA temp_store = MEMORY;
"""
