"""
Database Models

SQLAlchemy ORM tables and statement builders for the atstore service.

Key Models:
- base.py: Declarative base, shared column types and dialect-aware INSERT
- kv.py: `auth_state` and `auth_session` key-value tables
- records.py: `content_records` table, the validated `ContentRecord` domain
  object and record URI addressing
- health.py: In-process health gauge

Writes that may race on the same key are expressed as single
`INSERT ... ON CONFLICT DO UPDATE` statements built here, so the data layer
serializes them rather than the application.
"""
