SCHEMA_SQL = '''
CREATE TABLE IF NOT EXISTS wings (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    password_hash TEXT NOT NULL,
    password_salt TEXT NOT NULL,
    role TEXT NOT NULL DEFAULT 'pilot' CHECK (role IN ('pilot','instructor','admin')),
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS user_session (
    token TEXT PRIMARY KEY,
    user_id INTEGER NOT NULL,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    expires_at TEXT NOT NULL,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS pilots (
    id INTEGER PRIMARY KEY,
    user_id INTEGER,
    callsign TEXT NOT NULL,
    first_name TEXT NOT NULL,
    last_name TEXT NOT NULL,
    wing_id INTEGER NOT NULL,
    board_number TEXT,
    role TEXT NOT NULL DEFAULT 'pilot' CHECK (role IN ('pilot','instructor','admin')),
    email TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE SET NULL,
    FOREIGN KEY (wing_id) REFERENCES wings(id)
);

CREATE TABLE IF NOT EXISTS skills (
    id INTEGER PRIMARY KEY,
    wing_id INTEGER NOT NULL,
    name TEXT NOT NULL,
    category TEXT NOT NULL,
    description TEXT,
    sort_order INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (wing_id) REFERENCES wings(id) ON DELETE CASCADE
);

-- At most one row per pilot/skill pair; a missing row reads as NMQ
CREATE TABLE IF NOT EXISTS qualifications (
    id INTEGER PRIMARY KEY,
    pilot_id INTEGER NOT NULL,
    skill_id INTEGER NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('NMQ','MQT','FMQ','IP')),
    last_updated TEXT NOT NULL DEFAULT (datetime('now')),
    updated_by TEXT,
    FOREIGN KEY (pilot_id) REFERENCES pilots(id) ON DELETE CASCADE,
    FOREIGN KEY (skill_id) REFERENCES skills(id) ON DELETE CASCADE,
    UNIQUE(pilot_id, skill_id)
);

CREATE TABLE IF NOT EXISTS category_colors (
    id INTEGER PRIMARY KEY,
    wing_id INTEGER NOT NULL,
    category TEXT NOT NULL,
    color TEXT NOT NULL DEFAULT '#3B82F6',
    sort_order INTEGER NOT NULL DEFAULT 0,
    FOREIGN KEY (wing_id) REFERENCES wings(id) ON DELETE CASCADE,
    UNIQUE(wing_id, category)
);

CREATE TABLE IF NOT EXISTS settings (
    id INTEGER PRIMARY KEY,
    key TEXT NOT NULL UNIQUE,
    value TEXT NOT NULL,
    description TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_qualifications_pilot ON qualifications(pilot_id);
CREATE INDEX IF NOT EXISTS idx_qualifications_skill ON qualifications(skill_id);
CREATE INDEX IF NOT EXISTS idx_pilots_wing ON pilots(wing_id);
CREATE INDEX IF NOT EXISTS idx_pilots_user ON pilots(user_id);
CREATE INDEX IF NOT EXISTS idx_skills_wing ON skills(wing_id);
CREATE INDEX IF NOT EXISTS idx_user_session_user ON user_session(user_id);

-- Default UI settings
INSERT OR IGNORE INTO settings (key, value, description) VALUES
  ('nav_title', 'DCS Squadron', 'Title shown in the navigation bar'),
  ('nav_color', '#2563EB', 'Navigation bar color (hex code)'),
  ('nav_icon', 'Plane', 'Navigation bar icon name'),
  ('app_subtitle', 'Squadron Management System', 'Subtitle/tagline');
''';
