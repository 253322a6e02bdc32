"""
atstore Application Layer

The aiohttp web application: configuration, middleware, routes and background
tasks.

Key Components:
- cli.py: Entry point and logging configuration
- server.py: Application factory, middleware and route setup
- config.py: Pydantic settings and typed application keys
- metrics.py: Metrics client abstraction
- tasks.py: Mirror task tracking, mirror retry queue and maintenance tasks
- handlers/: Request handlers for auth, records and internal endpoints

Endpoints:
- OAuth login, callback and logout (/auth/atproto/*)
- Record API (/api/records*)
- Health checks (/internal/alive, /internal/ready)
"""
