"""
Database Models

This package defines the database models for the BPC service using SQLAlchemy ORM.
These models represent the persistent data structures for character tokens, corporation
blueprint snapshots and the change events produced by reconciliation.

Key Models:
- base.py: Base SQLAlchemy model with common type definitions
- tokens.py: One OAuth token per character, with its granted scopes
- blueprints.py: The last stored blueprint snapshot of each corporation, and the
  append-only log of reconciliation events
- health.py: Health monitoring gauge

The data models follow these relationships:
- CharacterTokenRecord: Keyed by character id, replaced on every new authorization
- BlueprintRecord: Keyed by corporation id plus the blueprint identity key
  (type id, location id, quantity)
- BlueprintEventRecord: Keyed by a ULID issued when the change was observed

Refresh tokens are stored encrypted; the models only ever see ciphertext.
"""
