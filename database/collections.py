"""Collection names shared by every component."""

ORDERS = 'orders'
OFFERS = 'offers'
LISTINGS = 'listings'
USERS = 'users'
PAYMENT_EVENTS = 'payment_events'
AUDIT_LOGS = 'audit_logs'
NOTIFICATION_EVENTS = 'notification_events'
OPS_HEALTH = 'ops_health'
