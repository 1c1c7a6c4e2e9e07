"""Relational storage for the analysis queue (SQLModel tables, engine policy, migrations)."""
