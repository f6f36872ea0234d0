"""auth/ -- Local administrator accounts and API authentication for VPNWarden.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/ or credentials/.
api/ imports from auth/, not the other way around.
"""
