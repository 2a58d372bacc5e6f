"""Local persistence.

SQLite-backed storage for the operation queue, the reference data cache and
the sync audit log. All tables live in one database file so a single
transaction can cover related changes.
"""
