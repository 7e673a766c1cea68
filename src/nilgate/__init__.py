"""nilgate — NIL deal lifecycle and compliance-gated payout engine."""

__version__ = "0.1.0"

from .attestations import AttestationStore, sign_attestation, verify_attestation_signature
from .audit import AuditTrail, EventType
from .chain import ChainClient, HttpChainClient, LocalChainClient, TransferReceipt
from .compliance import ComplianceEvaluator, ComplianceResult
from .config import Settings
from .errors import (
    AlreadyPaid,
    InvalidTransition,
    NilGateError,
    NonCompliant,
    NotFound,
    NotReady,
    PayoutFailed,
    UpstreamRejected,
    UpstreamTimeout,
    UpstreamUnavailable,
    ValidationError,
)
from .ledger import DealLedger
from .models import Athlete, Attestation, AttestationType, Deal, DealStatus, Payout, Split, SubjectType
from .money import proportional_splits
from .notify import Iso20022Notifier, PaymentNotifier, WebhookNotifier
from .orchestrator import DealService, RequestResult
from .payout import PayoutEngine
from .policy import JurisdictionPolicy, JurisdictionRequirement, load_policy

__all__ = [
    "__version__",
    "AlreadyPaid",
    "Athlete",
    "Attestation",
    "AttestationStore",
    "AttestationType",
    "AuditTrail",
    "ChainClient",
    "ComplianceEvaluator",
    "ComplianceResult",
    "Deal",
    "DealLedger",
    "DealService",
    "DealStatus",
    "EventType",
    "HttpChainClient",
    "InvalidTransition",
    "Iso20022Notifier",
    "JurisdictionPolicy",
    "JurisdictionRequirement",
    "LocalChainClient",
    "NilGateError",
    "NonCompliant",
    "NotFound",
    "NotReady",
    "PaymentNotifier",
    "Payout",
    "PayoutEngine",
    "PayoutFailed",
    "RequestResult",
    "Settings",
    "Split",
    "SubjectType",
    "TransferReceipt",
    "UpstreamRejected",
    "UpstreamTimeout",
    "UpstreamUnavailable",
    "ValidationError",
    "WebhookNotifier",
    "load_policy",
    "proportional_splits",
    "sign_attestation",
    "verify_attestation_signature",
]
