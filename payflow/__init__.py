"""Payflow: multi-step payment approval workflow engine."""

from .contracts import Decision, Identity, PaymentRequest, WorkflowDefinition
from .emitter import EventEmitter
from .engine import TransitionEngine
from .events import DomainEvent
from .persistence import WorkflowInstance, get_repository
from .service import WorkflowService
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "Decision",
    "DomainEvent",
    "EventEmitter",
    "Identity",
    "PaymentRequest",
    "TransitionEngine",
    "WorkflowDefinition",
    "WorkflowInstance",
    "WorkflowService",
    "get_repository",
    "get_transport",
]
