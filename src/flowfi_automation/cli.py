"""Console entrypoint shim; the CLI lives in `flowfi_automation.engine.main`."""

from __future__ import annotations

from flowfi_automation.engine.main import main

__all__ = ["main"]


if __name__ == "__main__":
    raise SystemExit(main())
