"""
Service layer: events, caching, retry, collaborators and validation.

Submodules are imported directly; this package does not re-export them so
that importing one service never pulls in the whole validation stack.
"""
