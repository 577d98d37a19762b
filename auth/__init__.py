"""auth/ -- Authentication and authorization package for DashGate.

Layer rule: auth/ imports stdlib, third-party libraries and core/ only.
It does NOT import from api/, discovery/ or health/.
api/ imports from auth/, not the other way around.
"""
