"""turnloop: runtime for long-lived, tool-using conversational agents.

Sessions are durable and replayable: every turn, tool call and event is
persisted, and an interrupted session can be resumed from the store.
"""

__version__ = "0.1.0"

# Public API
from turnloop.config import Config, get_config, load_config
from turnloop.core import LiteLLMProvider, Message, ModelProvider, ModelResponse, Role, SessionState
from turnloop.errors import (
    ErrorKind,
    PermissionNotFoundError,
    PoolError,
    ProviderError,
    ResumeError,
    ResumeErrorCode,
    StoreError,
    ToolDenied,
    TurnloopError,
)
from turnloop.events import Event, EventBus
from turnloop.logging import setup_logging
from turnloop.sandbox import LocalSandbox
from turnloop.scheduling import Scheduler, TimeBridge
from turnloop.session import (
    Allow,
    Ask,
    Deny,
    Hooks,
    Replace,
    Result,
    Room,
    Session,
    SessionOptions,
    SessionPool,
    TodoItem,
    Update,
    permission_modes,
)
from turnloop.store import JSONStore, MemoryStore
from turnloop.tools import FunctionTool, ToolContext, tool

__all__ = [
    "__version__",
    # Engine
    "Session",
    "SessionOptions",
    "SessionPool",
    "Room",
    "SessionState",
    # Model
    "LiteLLMProvider",
    "Message",
    "ModelProvider",
    "ModelResponse",
    "Role",
    # Events
    "Event",
    "EventBus",
    # Hooks and permissions
    "Allow",
    "Ask",
    "Deny",
    "Hooks",
    "Replace",
    "Result",
    "Update",
    "permission_modes",
    # Tools and sandbox
    "FunctionTool",
    "LocalSandbox",
    "ToolContext",
    "tool",
    # Scheduling
    "Scheduler",
    "TimeBridge",
    "TodoItem",
    # Storage
    "JSONStore",
    "MemoryStore",
    # Config
    "Config",
    "get_config",
    "load_config",
    "setup_logging",
    # Errors
    "ErrorKind",
    "PermissionNotFoundError",
    "PoolError",
    "ProviderError",
    "ResumeError",
    "ResumeErrorCode",
    "StoreError",
    "ToolDenied",
    "TurnloopError",
]
