"""Multi-tenant WhatsApp session gateway."""

from .api import create_app
from .lifecycle import ConnectionLifecycleManager

__all__ = ["create_app", "ConnectionLifecycleManager"]
