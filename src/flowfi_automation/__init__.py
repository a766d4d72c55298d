"""FlowFi automation engine.

Provides:
- configuration loaded from `.env`
- structured logging
- a trigger registry and execution coordinator for workflows and subscriptions
- a proposal resolution state machine for DAO governance
"""

__version__ = "0.1.0"

from flowfi_automation.engine.config import EngineSettings

__all__ = ["__version__", "EngineSettings"]
