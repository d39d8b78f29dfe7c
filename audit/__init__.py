"""audit/ -- Append-only audit trail of operator actions.

Layer rule: audit/ imports only stdlib and third-party libraries.
"""
