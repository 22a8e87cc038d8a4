"""auth/ -- Sessions, identity resolution, and OAuth login for SiteWatch.

Layer rule: auth/ imports only stdlib, third-party libraries, and core/.
It does NOT import from api/ or sites/.
api/ imports from auth/, not the other way around.
"""
