"""tenancy/ -- Sites, site domains, and Host-header tenant resolution.

Layer rule: tenancy/ imports only core/, cache/, stdlib and third-party
libraries. It does NOT import from api/, auth/, or enforcement/.
"""
