"""
Blueprint Reconciliation

Diffs a freshly fetched blueprint collection against the stored snapshot of a corporation and emits the
minimal changeset.

- records.py: ResourceRecord, EventKind and ReconciliationEvent value types
- reconciler.py: The diff itself, and serialized, all-or-nothing runs per corporation
- repository.py: Loading snapshots and applying changesets atomically with SQLAlchemy
"""
