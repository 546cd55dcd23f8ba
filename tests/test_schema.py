"""Tests for schema definitions and DDL generation."""

from database.lib.schema_manager import SchemaManager


def test_schema_files_load_in_version_order():
    manager = SchemaManager(pool=None)
    schema_files = manager._load_schema_files()

    assert 1 in schema_files
    assert list(schema_files) == sorted(schema_files)
    names = [table['name'] for table in schema_files[1]['tables']]
    assert names == ['chat_rooms', 'messages', 'exchange_rates']


def test_table_ddl():
    ddl = SchemaManager.table_ddl({
        'name': 'things',
        'columns': [
            {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
            {'name': 'label', 'type': 'TEXT', 'nullable': False}
        ]
    })

    assert ddl == (
        "CREATE TABLE IF NOT EXISTS things "
        "(id UUID DEFAULT gen_random_uuid(), label TEXT NOT NULL, PRIMARY KEY (id))"
    )


def test_messages_cascade_with_their_room():
    schema = SchemaManager(pool=None)._load_schema_files()[1]
    messages = next(table for table in schema['tables'] if table['name'] == 'messages')

    statements = SchemaManager.constraint_ddl(messages)

    assert statements[0] == (
        "ALTER TABLE messages ADD CONSTRAINT fk_messages_room_id "
        "FOREIGN KEY (room_id) REFERENCES chat_rooms(id) ON DELETE CASCADE"
    )
    assert "CREATE INDEX IF NOT EXISTS idx_messages_room_created ON messages(room_id, created_at)" in statements


def test_one_room_per_buyer_seller_pair():
    schema = SchemaManager(pool=None)._load_schema_files()[1]
    rooms = next(table for table in schema['tables'] if table['name'] == 'chat_rooms')

    statements = SchemaManager.constraint_ddl(rooms)

    assert (
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_chat_rooms_pair ON chat_rooms(buyer_id, seller_id)"
        in statements
    )
