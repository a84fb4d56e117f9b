from taskcore.backends.base import ModelBackend, StepEvent, StepFinish
from taskcore.backends.openai_backend import OpenAIBackend
from taskcore.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "ModelBackend",
    "OpenAIBackend",
    "ResilientBackend",
    "RetryPolicy",
    "StepEvent",
    "StepFinish",
]
