"""
Database Models

This package defines the persistent models for the TEP broker using SQLAlchemy ORM.
Everything else the broker holds (refresh records, consent sessions, idempotency guards) lives in
Redis and expires on its own.

Key Models:
- base.py: Base SQLAlchemy model with common type definitions
- users.py: Locally provisioned users, keyed by their delegated subject
- mini_apps.py: The mini-app registry consulted for client authentication
- approvals.py: Append-only consent approvals
- health.py: Health monitoring gauge (not persisted)
"""
