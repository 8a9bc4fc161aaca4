"""auth/ -- Authentication session core for SessionKit.

Layer rule: auth/ imports only stdlib + third-party libraries.
It does NOT import from api/ or core/; configuration arrives as constructor
arguments. api/ imports from auth/, not the other way around.
"""
