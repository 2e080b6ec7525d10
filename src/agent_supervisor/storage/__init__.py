"""SQLite storage layer: engine policy, ORM tables, migrations."""
