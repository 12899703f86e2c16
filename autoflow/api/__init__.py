"""HTTP surface: execution control, status, DOM capture, events and the fix surface."""

from autoflow.api.main import create_app

__all__ = ["create_app"]
