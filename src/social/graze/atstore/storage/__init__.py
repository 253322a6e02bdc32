"""
Local Storage

Async store classes over the SQLAlchemy tables in `social.graze.atstore.model`.

- kv.py: `KeyValueStore`, the atomic key-value store used for OAuth state and
  session credentials
- records.py: `RecordStore`, the authoritative table of content records

Store methods open a short-lived `AsyncSession` per call and never hold it
across a remote network round-trip. Database failures surface as
`StorageError`; absence is returned as None.
"""
