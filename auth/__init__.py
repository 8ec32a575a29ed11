"""auth/ -- Identity core for TenantGate: credentials, sessions, tokens, permissions.

Layer rule: auth/ imports from core/ plus stdlib and third-party libraries.
It does NOT import from api/ or cache/; the cache backend is injected.
api/ imports from auth/, not the other way around.
"""
