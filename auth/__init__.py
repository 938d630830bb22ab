"""auth/ -- Accounts, tokens, sessions, password reset, and role checks for EstateGate.

Layer rule: auth/ imports stdlib, third-party libraries, and core/.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
