"""FastAPI adapter for the automation engine.

Design intent:
- Keep business logic in `flowfi_automation.engine.*` and `flowfi_automation.governance.*`
- Keep server-specific concerns (routing, CORS, error-to-status mapping) here
"""

from __future__ import annotations

__all__ = ["create_app"]

from flowfi_automation.server.app import create_app
