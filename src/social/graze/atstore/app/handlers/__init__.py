"""
Request handlers.

- helpers.py: service token issue/validation and JSON error responses
- oauth.py: login, callback and logout
- records.py: record reads and writes
- internal.py: liveness and readiness checks
"""
