"""Core services for the AgriTrace backend."""

from .errors import (
    AgriTraceError,
    InvalidLedgerTarget,
    LedgerReadFailed,
    NotFound,
    RelayerNotConfigured,
    SignalRejected,
    TransitionDenied,
    ValidationFailed,
    WriteRejected,
)
from .ledger import BatchRecord, Capability, PriceRole, RegistrationEvent
from .custody import Caller, CustodyPolicy, CustodyService, HolderRole
from .registry import BatchRegistry, BatchView
from .settlement import (
    FileSessionTracker,
    InMemorySessionTracker,
    SettlementReconciler,
    SettlementSignal,
    SignalSource,
)
from .payments import PaymentGateway, PaymentGatewayNotConfigured
from .moderation import ModerationQueue
from .qr import QRService

__all__ = [
    "AgriTraceError",
    "InvalidLedgerTarget",
    "LedgerReadFailed",
    "NotFound",
    "RelayerNotConfigured",
    "SignalRejected",
    "TransitionDenied",
    "ValidationFailed",
    "WriteRejected",
    "BatchRecord",
    "Capability",
    "PriceRole",
    "RegistrationEvent",
    "Caller",
    "CustodyPolicy",
    "CustodyService",
    "HolderRole",
    "BatchRegistry",
    "BatchView",
    "FileSessionTracker",
    "InMemorySessionTracker",
    "SettlementReconciler",
    "SettlementSignal",
    "SignalSource",
    "PaymentGateway",
    "PaymentGatewayNotConfigured",
    "ModerationQueue",
    "QRService",
]
