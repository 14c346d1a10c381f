"""
Exception types raised by the delivery subsystem.

Network and HTTP failures are NOT exceptions here: they are returned as
AttemptResult values by the executor. Only store outages, missing records
and signing misconfiguration are raised.
"""


class HookRelayError(Exception):
    """Base class for all HookRelay errors."""


class StoreFailure(HookRelayError):
    """The persistence layer is unavailable or rejected an operation."""


class DeliveryNotFound(HookRelayError):
    """No delivery exists with the requested id."""

    def __init__(self, delivery_id: str):
        super().__init__(f"Delivery not found: {delivery_id}")
        self.delivery_id = delivery_id


class WebhookNotFound(HookRelayError):
    """No webhook exists with the requested id."""

    def __init__(self, webhook_id: str):
        super().__init__(f"Webhook not found: {webhook_id}")
        self.webhook_id = webhook_id


class SignatureSetupError(HookRelayError):
    """The webhook secret is missing or unusable for signing."""


class WebhookInactive(HookRelayError):
    """The webhook exists but has been disabled."""

    def __init__(self, webhook_id: str):
        super().__init__(f"Webhook is disabled: {webhook_id}")
        self.webhook_id = webhook_id
