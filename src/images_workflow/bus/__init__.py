"""Message bus transports."""

from .base import EventHandler, MessageBus
from .memory import DeadLetter, InMemoryMessageBus
from .sqs import SqsMessageBus

__all__ = [
    "EventHandler",
    "MessageBus",
    "DeadLetter",
    "InMemoryMessageBus",
    "SqsMessageBus",
]
