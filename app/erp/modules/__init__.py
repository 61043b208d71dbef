"""
Feature modules live under this package.

Each module owns its controllers, templates and messages, and is registered
with the Application at startup; platform primitives (auth, RBAC, request
scope, DB session) are shared.
"""
