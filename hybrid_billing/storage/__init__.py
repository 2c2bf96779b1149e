"""Storage layer: SQLite schema, models and stores."""
