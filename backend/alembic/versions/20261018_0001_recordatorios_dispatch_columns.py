"""Create recordatorios or bring an older table up to the dispatch columns."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None

TABLE = "recordatorios"
INDEX = "ix_recordatorios_due"


# Columns older CRM deployments may be missing.
def _added_columns() -> tuple[sa.Column, ...]:
    return (
        sa.Column("intento_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
    )


def upgrade() -> None:
    inspector = sa.inspect(op.get_bind())
    if not inspector.has_table(TABLE):
        op.create_table(
            TABLE,
            sa.Column("id", sa.Integer(), nullable=False, autoincrement=True),
            sa.Column("organizacion_id", sa.Text(), nullable=False),
            sa.Column("titulo", sa.Text(), nullable=True),
            sa.Column("mensaje", sa.Text(), nullable=True),
            sa.Column("enviar_en", sa.DateTime(timezone=True), nullable=False),
            sa.Column("cliente_id", sa.Integer(), nullable=True),
            sa.Column("tarea_id", sa.Integer(), nullable=True),
            sa.Column("estado", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("intento_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
            sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
    else:
        existing = {column["name"].lower() for column in inspector.get_columns(TABLE)}
        with op.batch_alter_table(TABLE) as batch:
            for column in _added_columns():
                if column.name not in existing:
                    batch.add_column(column)

    indexes = {index["name"] for index in sa.inspect(op.get_bind()).get_indexes(TABLE)}
    if INDEX not in indexes:
        op.create_index(INDEX, TABLE, ["organizacion_id", "estado", "enviar_en"], unique=False)


def downgrade() -> None:
    """Drop the due index and the dispatch columns.

    The table itself is kept even when upgrade created it; rows and the
    base CRM columns survive a downgrade.
    """
    inspector = sa.inspect(op.get_bind())
    if not inspector.has_table(TABLE):
        return
    if INDEX in {index["name"] for index in inspector.get_indexes(TABLE)}:
        op.drop_index(INDEX, table_name=TABLE)
    existing = {column["name"].lower() for column in inspector.get_columns(TABLE)}
    with op.batch_alter_table(TABLE) as batch:
        for column in _added_columns():
            if column.name in existing:
                batch.drop_column(column.name)
