"""
BPC - Corporation blueprint tracker for EVE Online

This package implements the backend of a corporation-management web application. Members link their
characters through EVE SSO, and the service uses the union of the scopes those characters granted to act on
behalf of the corporation against ESI, the game's public API.

Key Components:
- app: Web application layer with request handlers, background tasks and server configuration
- auth: Character token pool, clock-skew policy, scope resolution and session identity
- esi: Integration with EVE SSO and ESI, including error classification and scope tables
- model: Database models for tokens, blueprint snapshots and change events
- reconcile: Diffing fetched blueprint collections against stored snapshots

Architecture Overview:
1. Token Management:
   - Characters authorize through EVE SSO and their tokens are pooled per character
   - Tokens are refreshed on demand when they fall inside the clock-skew window
   - Concurrent resolvers share a single in-flight refresh per character

2. Scope Resolution:
   - An operation declares the scopes it needs
   - A greedy set cover picks the fewest characters whose tokens cover those scopes

3. Reconciliation:
   - Blueprints are fetched with a resolved token and compared to the stored snapshot
   - Only added, changed or removed blueprints produce events
   - Each run is all-or-nothing and serialized per corporation
"""
