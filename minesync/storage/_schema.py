SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied_at REAL NOT NULL
);

-- Accounts: phone-tied accounts registered on this device
CREATE TABLE IF NOT EXISTS accounts (
    phone_number TEXT PRIMARY KEY,
    user_id      TEXT NOT NULL DEFAULT '',
    username     TEXT NOT NULL DEFAULT '',
    access_token TEXT NOT NULL DEFAULT '',
    created_at   REAL NOT NULL
);

-- Mining records: one row per phone number, payload kept as JSON
CREATE TABLE IF NOT EXISTS mining_records (
    phone_number TEXT PRIMARY KEY,
    payload_json TEXT NOT NULL DEFAULT '{}',
    updated_at   REAL
);

CREATE INDEX IF NOT EXISTS idx_mining_records_updated ON mining_records(updated_at);
"""
