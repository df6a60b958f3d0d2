SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied_at REAL NOT NULL
);

-- Participants: monitored pool users (never deleted, only deactivated)
CREATE TABLE IF NOT EXISTS participants (
    address       TEXT PRIMARY KEY,
    is_active     INTEGER NOT NULL DEFAULT 1,
    is_public     INTEGER NOT NULL DEFAULT 1,
    best_ever     REAL NOT NULL DEFAULT 0,
    total_blocks  INTEGER NOT NULL DEFAULT 0,
    authorised_at REAL NOT NULL DEFAULT 0,
    created_at    REAL NOT NULL,
    updated_at    REAL NOT NULL
);

-- Watermarks: highest difficulty share per block
CREATE TABLE IF NOT EXISTS block_highest_diff (
    block_height     INTEGER PRIMARY KEY,
    top_diff_address TEXT NOT NULL,
    difficulty       REAL NOT NULL CHECK (difficulty >= 0),
    block_timestamp  REAL,
    collected_at     REAL NOT NULL
);

-- Per-user best share per block
CREATE TABLE IF NOT EXISTS user_block_diff (
    block_height INTEGER NOT NULL,
    address      TEXT NOT NULL,
    difficulty   REAL NOT NULL CHECK (difficulty >= 0),
    collected_at REAL NOT NULL,
    PRIMARY KEY (block_height, address)
);

-- Indexes for common queries
CREATE INDEX IF NOT EXISTS idx_highest_diff_address ON block_highest_diff(top_diff_address);
CREATE INDEX IF NOT EXISTS idx_user_block_diff_address ON user_block_diff(address, block_height);
CREATE INDEX IF NOT EXISTS idx_user_block_diff_height_diff ON user_block_diff(block_height, difficulty);
CREATE INDEX IF NOT EXISTS idx_participants_public ON participants(is_public);
"""
