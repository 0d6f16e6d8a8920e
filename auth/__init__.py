"""auth/ -- Credentials, tokens, revocation and lockout for the expense tracker.

Layer rule: auth/ imports only stdlib, third-party libraries and core.config.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
