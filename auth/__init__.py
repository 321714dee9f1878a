"""auth/ -- Credential and session security package for Estate Auth.

Layer rule: auth/ imports only stdlib + third-party libraries, plus
core.config for the Settings type.
It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
