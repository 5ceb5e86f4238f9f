"""External integration adapters."""

from .google_oauth import GoogleOAuthClient, RefreshedToken
from .n8n import N8NClient

__all__ = [
    "GoogleOAuthClient",
    "N8NClient",
    "RefreshedToken",
]
