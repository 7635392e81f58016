"""
BPC Application Layer

This package implements the web application layer of the service on aiohttp: EVE SSO sign-in, the blueprint
API, internal health endpoints and the background tasks that keep blueprint snapshots current.

Key Components:
- cli.py: Entry point, logging setup
- server.py: Web server configuration, middleware and startup of shared resources
- config.py: Configuration management using Pydantic settings
- handlers/: Request handlers for the endpoints below
- tasks.py: Background tasks for scheduled reconciliation and health monitoring
- metrics.py: Metrics client abstraction

The application uses two middleware layers:
- Statsd middleware for metrics collection
- Sentry middleware for error reporting

It provides the following endpoints:
- SSO endpoints (/login, /callback, /logout)
- Internal endpoints (/internal/alive, /internal/ready, /internal/api/me)
- Blueprint API (/api/blueprints, /api/blueprints/reconcile)
"""
