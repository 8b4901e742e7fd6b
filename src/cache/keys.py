"""Storage key naming conventions for Courtside delivery.

All keys are namespaced with 'courtside:' prefix.
"""

# Offline delivery queue (no TTL, persisted as one versioned JSON blob)
NOTIFICATION_QUEUE = "courtside:notification_queue"

# Queue blob schema version written by the current release
NOTIFICATION_QUEUE_VERSION = 1
