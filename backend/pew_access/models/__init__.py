"""
Database models for the access-control core.

ORM classes live next to their domain types (rbac.models, policies.models,
compliance.models, experiments.models, platform.audit). This package holds
the shared column helpers. Call import_all_models() before touching
Base.metadata so every table is registered.
"""


def import_all_models():
    """Import every ORM module and return the populated metadata."""
    from pew_access.db_base import Base
    from pew_access.rbac import models as _rbac  # noqa: F401
    from pew_access.policies import models as _policies  # noqa: F401
    from pew_access.compliance import models as _compliance  # noqa: F401
    from pew_access.experiments import models as _experiments  # noqa: F401
    from pew_access.platform import audit as _audit  # noqa: F401

    return Base.metadata
