"""Chat rooms, messages and exchange rate snapshots.

users and items belong to the wider marketplace schema and are referenced by id only.
"""

schema = {
    'version': 1,
    'tables': [
        {
            'name': 'chat_rooms',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'item_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'buyer_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'seller_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'buyer_hidden', 'type': 'BOOLEAN', 'default': 'false', 'nullable': False},
                {'name': 'seller_hidden', 'type': 'BOOLEAN', 'default': 'false', 'nullable': False},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'default': 'now()', 'nullable': False}
            ],
            'indexes': [
                {'name': 'idx_chat_rooms_pair', 'columns': ['buyer_id', 'seller_id'], 'unique': True},
                {'name': 'idx_chat_rooms_seller', 'columns': ['seller_id']},
                {'name': 'idx_chat_rooms_item', 'columns': ['item_id']}
            ]
        },
        {
            'name': 'messages',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'room_id', 'type': 'UUID', 'nullable': False},
                {'name': 'sender_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'content', 'type': 'TEXT', 'nullable': False},
                {'name': 'message_type', 'type': 'TEXT', 'default': "'user'", 'nullable': False},
                {'name': 'is_read', 'type': 'BOOLEAN', 'default': 'false', 'nullable': False},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'default': 'clock_timestamp()', 'nullable': False}
            ],
            'foreign_keys': [
                {'columns': ['room_id'], 'references': 'chat_rooms(id) ON DELETE CASCADE'}
            ],
            'indexes': [
                {'name': 'idx_messages_room_created', 'columns': ['room_id', 'created_at']}
            ]
        },
        {
            'name': 'exchange_rates',
            'columns': [
                {'name': 'id', 'type': 'BIGSERIAL', 'primary_key': True},
                {'name': 'base_currency', 'type': 'TEXT', 'nullable': False},
                {'name': 'rates', 'type': 'JSONB', 'nullable': False},
                {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'default': 'now()', 'nullable': False}
            ],
            'indexes': [
                {'name': 'idx_exchange_rates_base_updated', 'columns': ['base_currency', 'updated_at']}
            ]
        }
    ],
    'migrations': []
}
