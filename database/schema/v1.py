"""Schema v1 - Document store.

Orders, offers, listings, seller profiles, payment event records, audit
entries, notification events and ops health all live in one JSONB table
keyed by (collection, id). Expression indexes cover the fields the
reconciliation sweep and the webhook handlers query on.
"""

schema = {
    'version': 1,
    'tables': [
        {
            'name': 'documents',
            'columns': [
                {'name': 'collection', 'type': 'TEXT', 'nullable': False},
                {'name': 'id', 'type': 'TEXT', 'nullable': False},
                {'name': 'data', 'type': 'JSONB', 'nullable': False},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'primary_key': ['collection', 'id'],
            'indexes': [
                {
                    'name': 'idx_documents_status_expires',
                    'columns': ['collection', "(data->>'status')", "(data->>'expires_at')"]
                },
                {
                    'name': 'idx_documents_status_accepted',
                    'columns': ['collection', "(data->>'status')", "(data->>'accepted_at')"]
                },
                {
                    'name': 'idx_documents_transaction_status',
                    'columns': ['collection', "(data->>'transaction_status')"]
                },
                {
                    'name': 'idx_documents_seller',
                    'columns': ['collection', "(data->>'seller_id')"]
                },
                {
                    'name': 'idx_documents_purchase_reserved',
                    'columns': ['collection', "(data->>'purchase_reserved_until')"],
                    'where': "data->>'purchase_reserved_until' IS NOT NULL"
                }
            ]
        }
    ]
}
