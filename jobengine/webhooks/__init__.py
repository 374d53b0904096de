"""
Webhooks module.
Contains outbound webhook delivery and its request safety checks.
Importing this package registers the ``deliver_webhook`` job handler.
"""

from jobengine.webhooks.delivery import (
    WebhookDeliverer,
    deliver_webhook,
    get_deliverer,
    handle_deliver_webhook,
    set_deliverer,
)

__all__ = [
    "WebhookDeliverer",
    "deliver_webhook",
    "get_deliverer",
    "set_deliverer",
    "handle_deliver_webhook",
]
