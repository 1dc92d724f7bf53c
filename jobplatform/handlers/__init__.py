"""Built-in job handlers."""

from .maintenance import CompletedJobsCleanupHandler
from .webhook import WebhookDeliveryHandler, sign

__all__ = ["CompletedJobsCleanupHandler", "WebhookDeliveryHandler", "sign"]
