"""auth/ -- Authentication and session-lifecycle package for Gruff.

Layer rule: auth/ imports only stdlib + third-party libraries, plus the kv/
interface for session persistence. It does NOT import from api/ or core/.
api/ imports from auth/, not the other way around.
"""
