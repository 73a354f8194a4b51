"""
Platform-level modules shared by every evaluator.

- errors: access-control error hierarchy
- principal: Principal / RequestContext and evaluation-context flattening
- audit: append-only access audit log and sinks
"""
