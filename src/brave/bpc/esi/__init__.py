"""
EVE SSO and ESI Integration

This package provides integration with EVE Online's single sign-on and its public API.

Key Components:
- oauth.py: SSO authorization URL, code exchange with JWT verification, and token refresh
- corporation.py: Paginated corporation endpoints (blueprints)
- errors.py: Classification of SSO/ESI failures into a small taxonomy
- scopes.py: ESI scope names and the scopes each privileged operation requires

Errors raised by this package are structured (ESIError carries status and body, RefreshError carries an
ErrorKind) so that callers decide between dropping a credential and retrying without parsing messages.
"""
