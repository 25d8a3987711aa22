from src.auth.context import WebhookCallerContext
from src.auth.dependencies import require_webhook_caller

__all__ = [
    "WebhookCallerContext",
    "require_webhook_caller",
]
