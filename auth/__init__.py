"""auth/ -- Credentials, scoped tokens, and their persistence for Tokenward.

Layer rule: auth/ imports only stdlib, third-party libraries, and core/.
It does NOT import from api/ or mailer/.
api/ imports from auth/, not the other way around.
"""
