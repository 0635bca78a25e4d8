"""Turn-processing core of the analyst chat.

Lazy imports keep ``python -m sandbox.runtime`` (which only needs
``analyst.limits`` and ``analyst.paths``) from loading the HTTP stack.
"""

__version__ = "0.1.0"


def __getattr__(name: str):
    if name in ("TurnOrchestrator", "TurnResult"):
        from . import orchestrator
        return getattr(orchestrator, name)
    if name in ("ChatSession", "SendResult"):
        from . import session
        return getattr(session, name)
    if name == "ChatConfig":
        from .chat_config import ChatConfig
        return ChatConfig
    if name in ("TurnCancelled", "TurnTimeout", "CancelToken"):
        from . import cancellation
        return getattr(cancellation, name)
    raise AttributeError(f"module 'analyst' has no attribute {name!r}")
