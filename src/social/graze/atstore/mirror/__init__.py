"""
Remote Mirror

Best-effort copy of locally committed records into the author's remote
repository.

- classify.py: maps `RemoteRepositoryError` kinds to `MirrorErrorClass`
- engine.py: `RemoteMirror`, the put-then-create state machine with a single
  validation-relaxation retry
- scheduler.py: `MirrorTaskSet`, tracked background mirror runs after a local
  commit

The local store stays authoritative. Nothing in this package raises to the
writer of a record; abandoned mirrors are logged and counted.
"""
