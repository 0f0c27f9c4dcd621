"""auth/ -- Identity for IdentityHub: passwords, session JWTs, API keys, OAuth state.

Layer rule: auth/ imports stdlib, third-party libraries and core/ (settings,
errors). It does NOT import from api/ or tracker/; both of those import from auth/.
"""
