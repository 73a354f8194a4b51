"""access_control_baseline

Revision ID: a3c91e5f20d4
Revises:
Create Date: 2026-10-18 09:12:41.508113

"""
from typing import Sequence, Union

from alembic import op

from pew_access.models import import_all_models


# revision identifiers, used by Alembic.
revision: str = 'a3c91e5f20d4'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


_APPEND_ONLY_FUNCTION = """
CREATE OR REPLACE FUNCTION access_audit_logs_append_only()
RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION 'access_audit_logs is append-only';
END;
$$ LANGUAGE plpgsql;
"""

_APPEND_ONLY_TRIGGER = """
CREATE TRIGGER access_audit_logs_no_modify
BEFORE UPDATE OR DELETE ON access_audit_logs
FOR EACH ROW EXECUTE FUNCTION access_audit_logs_append_only();
"""


def upgrade() -> None:
    bind = op.get_bind()
    metadata = import_all_models()
    metadata.create_all(bind=bind)
    if bind.dialect.name == "postgresql":
        op.execute(_APPEND_ONLY_FUNCTION)
        op.execute(_APPEND_ONLY_TRIGGER)


def downgrade() -> None:
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        op.execute("DROP TRIGGER IF EXISTS access_audit_logs_no_modify ON access_audit_logs")
        op.execute("DROP FUNCTION IF EXISTS access_audit_logs_append_only()")
    import_all_models().drop_all(bind=bind)
