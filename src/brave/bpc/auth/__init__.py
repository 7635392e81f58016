"""
Character Token Pool and Identity

This package owns everything the service knows about who may do what:

- token.py: CharacterToken and ScopeSourcePair value types
- skew.py: Clock-skew tolerant expiry checks
- store.py: In-memory token pool with per-character locking and write-through persistence
- repository.py: SQLAlchemy persistence of the token pool
- resolver.py: Greedy covering-set selection of character tokens for a set of required scopes
- session.py: Mapping of opaque session keys to character identities

Scope resolution may refresh tokens through brave.bpc.esi.oauth, but only the resolver writes the
outcome of a refresh back into the store. The refresher itself is pure.
"""
