"""auth/ -- Credentials, sessions, role ledger, audit log and the Auth Service.

Layer rule: auth/ imports only core/, stdlib and third-party libraries.
It does NOT import from api/, tenancy/, enforcement/, or cache/.
api/ imports from auth/, not the other way around.
"""
