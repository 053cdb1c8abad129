"""Generation service invocation components."""

from .boundary import GenerationBoundary, HttpGenerationBoundary
from .service import AIInvocationGateway
from .types import ChatMessage, ChatOptions, GenerationRequest, Transport, TransportAttempt

__all__ = [
    "GenerationBoundary",
    "HttpGenerationBoundary",
    "AIInvocationGateway",
    "ChatMessage",
    "ChatOptions",
    "GenerationRequest",
    "Transport",
    "TransportAttempt",
]
