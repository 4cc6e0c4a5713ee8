"""
TEP Application Layer

This package implements the web application layer of the TEP broker using the aiohttp framework.
It wires the protocol components together, exposes them over HTTP, and runs the background tasks.

Key Components:
- server.py: Component construction, middleware and route setup
- config.py: Settings loaded with pydantic-settings and the AppKeys used for dependency injection
- handlers/: Request handlers for the OAuth, wallet and internal endpoints
- tasks.py: Background tasks for transfer expiry and health monitoring
- metrics.py: Metrics abstraction over Telegraf/StatsD
- cli.py: Logging setup and the ``tep-server`` entry point
- util/: The ``tep-util`` key generation commands

The application uses two middleware layers:
- Metrics middleware for request counts, timings and exceptions
- Sentry middleware for error reporting

It provides the following main endpoints:
- OAuth endpoints (/oauth2/*, /.well-known/jwks.json)
- Wallet endpoints (/api/v1/wallet/*)
- Internal endpoints (/internal/*)
"""
