# core/__init__.py
"""
Core pipeline package.

Import order (least dependent first):
1. errors, conversation, cancellation
2. session_guard, stream_text, context_utils, swing_context
3. coordinator, upload_adapter, streaming_client, dispatcher, retry_engine
4. orchestrator
"""

__all__ = [
    'AnalysisOrchestrator',
    'RequestCoordinator',
    'CancellationToken',
]


# Lazy imports keep `import core` free of the HTTP and OpenAI stacks
def get_orchestrator_class():
    from .orchestrator import AnalysisOrchestrator
    return AnalysisOrchestrator


def get_coordinator_class():
    from .coordinator import RequestCoordinator
    return RequestCoordinator


def __getattr__(name):
    if name == 'AnalysisOrchestrator':
        return get_orchestrator_class()
    if name == 'RequestCoordinator':
        return get_coordinator_class()
    if name == 'CancellationToken':
        from .cancellation import CancellationToken
        return CancellationToken
    raise AttributeError(f"module 'core' has no attribute {name!r}")
