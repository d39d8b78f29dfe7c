"""auth/ -- Authentication, session, and access-control core for dnsdesk.

Layer rule: auth/ imports only stdlib, third-party libraries, core/, and audit/.
It does NOT import from api/ or web/.
api/ and web/ import from auth/, not the other way around.
"""
