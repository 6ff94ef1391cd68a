"""HTTP interface: webhooks for inbound email and the conversion API."""

from .app import create_app

__all__ = ["create_app"]
