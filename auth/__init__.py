"""auth/ -- Identity, tokens, second factors and passkeys for Master Auth.

Layer rule: auth/ imports from core/ (config, errors) and mail/ (email jobs)
plus third-party libraries. It does NOT import from api/ or web/.
api/ imports from auth/, not the other way around.
"""
