"""
Access-control core for the Pew social backend.

Subpackages:
- rbac: role registry and permission resolution
- policies: feature policy engine (predicate trees, target matching)
- compliance: jurisdiction / sanctions gate
- experiments: deterministic A/B variant assignment
- guard: route guard that composes everything into one access decision
- platform: principals, errors, audit logging
"""

__version__ = "0.4.0"
