"""Cloud synchronization engine for the PaintPulse point-of-sale database.

Exports the local SQLite database to a remote Postgres database and imports
it back, driven by a durable job queue.
"""

__version__ = "1.0.0"
