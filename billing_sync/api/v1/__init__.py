from billing_sync.api.v1 import admin, internal, webhooks

__all__ = [
    "admin",
    "internal",
    "webhooks",
]
