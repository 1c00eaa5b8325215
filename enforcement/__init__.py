"""enforcement/ -- Vendor go-live, catalog visibility and promotion eligibility gates.

Layer rule: enforcement/ imports only core/, auth.audit, stdlib and
third-party libraries. It does NOT import from api/ or tenancy/.
"""
