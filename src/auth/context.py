from dataclasses import dataclass


@dataclass
class WebhookCallerContext:
    """Identity context for webhook producers. Tenant scope comes from the payload, not the caller."""
    auth_method: str = "none"  # "none" or "shared_secret"
    token_fingerprint: str | None = None
