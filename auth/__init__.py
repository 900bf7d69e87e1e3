"""auth/ -- Authentication and tenant authorization core for tenantauth.

Sessions (sessions.py), org access (orgs.py) and invitations (invites.py)
over a single CredentialStore (store.py).

Layer rule: auth/ imports stdlib, third-party libraries and core/ (config).
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
