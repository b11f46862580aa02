"""auth/ -- Authentication and authorization core for DealFlow CRM.

Local password credentials and Microsoft Entra ID federation, unified behind
one Account model, server-side sessions, and a role gate.

Layer rule: auth/ imports only stdlib, third-party libraries, and core/.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
