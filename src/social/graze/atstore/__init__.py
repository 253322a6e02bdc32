"""
atstore - identity-scoped persistence for AT Protocol clients

This service stores OAuth flow state and session credentials for authenticated
identities, keeps an authoritative local table of user-authored content
records, and mirrors each record write, best-effort, into the author's remote
repository on their PDS.

Key Components:
- app: aiohttp application, configuration, handlers and background tasks
- atproto: XRPC client, DPoP signing and the OAuth protocol client seam
- model: SQLAlchemy tables, upsert statements and the record domain type
- storage: Key-value and record stores over the SQLAlchemy async engine
- mirror: Put-then-create remote mirror and its error classifier

Architecture Overview:
1. Local writes are synchronous and authoritative. A record write commits to
   `content_records` before anything touches the network.
2. Mirroring runs afterwards in a tracked background task. It restores the
   author's session, then attempts `putRecord`, relaxing validation once on a
   schema failure and falling back to `createRecord` when the record is absent.
3. Mirror failures are logged and counted, never raised to the writer. With
   the retry queue enabled, transport failures are retried from Redis with
   exponential backoff.
"""
