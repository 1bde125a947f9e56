"""message insert NOTIFY trigger

Learn: PostgreSQL LISTEN/NOTIFY gives us push delivery straight from the
commit. The trigger runs inside the inserting transaction, and PostgreSQL
only delivers the notification if that transaction commits, so a listener
can never see a message id that is not yet readable.

Payload: {id, user_id, content, created_at} on channel 'new_message'.
Streaming sessions only rely on 'id' and re-read the row. 5000 characters
of multibyte content can exceed NOTIFY's 8000-byte limit, which would make
the INSERT itself fail, so oversized payloads go out without 'content'.

Revision ID: 85a67264382e
Revises: 3f1c0a9d2b7e
Create Date: 2026-01-12 08:51:54.118206
"""
from typing import Sequence, Union

from alembic import op


revision: str = '85a67264382e'
down_revision: Union[str, None] = '3f1c0a9d2b7e'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _is_postgres() -> bool:
    return op.get_bind().dialect.name == "postgresql"


def upgrade() -> None:
    if not _is_postgres():
        return

    op.execute("""
        CREATE OR REPLACE FUNCTION notify_new_message()
        RETURNS TRIGGER AS $$
        DECLARE
            payload text;
        BEGIN
            payload := json_build_object(
                'id', NEW.id,
                'user_id', NEW.user_id,
                'content', NEW.content,
                'created_at', NEW.created_at
            )::text;
            -- pg_notify rejects payloads of 8000 bytes or more
            IF octet_length(payload) >= 8000 THEN
                payload := json_build_object(
                    'id', NEW.id,
                    'user_id', NEW.user_id,
                    'created_at', NEW.created_at
                )::text;
            END IF;
            PERFORM pg_notify('new_message', payload);
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql;
    """)

    op.execute("DROP TRIGGER IF EXISTS message_insert_notify ON messages;")
    op.execute("""
        CREATE TRIGGER message_insert_notify
            AFTER INSERT ON messages
            FOR EACH ROW
            EXECUTE FUNCTION notify_new_message();
    """)


def downgrade() -> None:
    if not _is_postgres():
        return

    op.execute("DROP TRIGGER IF EXISTS message_insert_notify ON messages;")
    op.execute("DROP FUNCTION IF EXISTS notify_new_message;")
