"""
ai-lambda-service — declarative HTTP endpoints backed by AI prompts,
local Python functions or the WorkIQ assistant.

Architecture:
    ┌──────────────┐  route   ┌───────────────┐  ask()  ┌──────────────┐
    │ FastAPI host │ ───────▶ │ endpoint      │ ──────▶ │ WorkIQClient │
    │ (server.py)  │          │ handler       │         │ (manager.py) │
    └──────────────┘          └───────────────┘         └──────┬───────┘
                                     │ on failure              │ JSON-RPC
                                     ▼                         ▼ over stdio
                              ┌───────────────┐         ┌──────────────┐
                              │ CLI fallback  │         │ workiq mcp   │
                              │ (fallback.py) │         │ (subprocess) │
                              └───────────────┘         └──────────────┘

The WorkIQ process is started lazily, shared by every request, and
terminated when the host shuts down.
"""

__version__ = "0.3.0"

from lambda_service.config import EndpointConfig, HandlerKind, ServiceConfig, load_config
from lambda_service.handlers import build_query, create_handler
from lambda_service.manager import SessionState, WorkIQClient, WorkIQSettings
from lambda_service.server import create_app

__all__ = [
    "EndpointConfig",
    "HandlerKind",
    "ServiceConfig",
    "SessionState",
    "WorkIQClient",
    "WorkIQSettings",
    "build_query",
    "create_app",
    "create_handler",
    "load_config",
]
