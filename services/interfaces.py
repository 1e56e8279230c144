"""
External collaborator interfaces consumed by the escrow core.

Implementations live outside this package (payment provider adapters,
moderation and AI clients, notification and audit pipelines) and are passed
into the services explicitly.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Protocol, runtime_checkable

from models import ResolutionDecision

logger = logging.getLogger(__name__)

GATEWAY_SUCCESS_STATUSES = {"succeeded", "completed", "paid", "requires_capture"}


class PaymentGatewayError(Exception):
    """Raised by gateway adapters when a provider call fails"""


@dataclass(frozen=True)
class GatewayResult:
    id: str
    status: str

    @property
    def succeeded(self) -> bool:
        return (self.status or "").lower() in GATEWAY_SUCCESS_STATUSES

    @classmethod
    def coerce(cls, raw: Any) -> "GatewayResult":
        """Accept adapter results as GatewayResult or a {id, status} mapping"""
        if isinstance(raw, cls):
            return raw
        if isinstance(raw, Mapping):
            return cls(id=str(raw.get("id") or ""), status=str(raw.get("status") or ""))
        raise PaymentGatewayError(f"Unrecognised gateway response: {raw!r}")


@dataclass(frozen=True)
class ModerationResult:
    is_approved: bool
    message: Optional[str] = None

    @classmethod
    def coerce(cls, raw: Any) -> "ModerationResult":
        if isinstance(raw, cls):
            return raw
        if isinstance(raw, Mapping):
            approved = raw.get("is_approved", raw.get("isApproved"))
            return cls(is_approved=approved is True, message=raw.get("message"))
        # Anything unrecognised is a rejection
        return cls(is_approved=False, message="Moderation response could not be interpreted")


@dataclass(frozen=True)
class DisputeAnalysis:
    """Advisory output of the AI oracle; never authorizes a fund movement"""

    freelancer_confidence: int
    client_confidence: int
    recommended_resolution: Optional[ResolutionDecision]
    key_issues: List[str] = field(default_factory=list)
    reasoning: str = ""

    @property
    def max_confidence(self) -> int:
        return max(self.freelancer_confidence, self.client_confidence)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "confidence_score": {
                "freelancer": self.freelancer_confidence,
                "client": self.client_confidence,
            },
            "recommended_resolution": (
                self.recommended_resolution.value if self.recommended_resolution else None
            ),
            "key_issues": list(self.key_issues),
            "reasoning": self.reasoning,
        }

    @classmethod
    def coerce(cls, raw: Any) -> "DisputeAnalysis":
        if isinstance(raw, cls):
            return raw
        if not isinstance(raw, Mapping):
            raise ValueError(f"Unrecognised analysis payload: {raw!r}")

        scores = raw.get("confidence_score") or raw.get("confidenceScore") or {}
        recommended = raw.get("recommended_resolution", raw.get("recommendedResolution"))
        try:
            decision = ResolutionDecision.parse(recommended) if recommended else None
        except ValueError:
            logger.warning(f"⚠️ Advisor recommended unknown resolution {recommended!r}; ignoring")
            decision = None

        return cls(
            freelancer_confidence=int(scores.get("freelancer", 0)),
            client_confidence=int(scores.get("client", 0)),
            recommended_resolution=decision,
            key_issues=list(raw.get("key_issues") or raw.get("keyIssues") or []),
            reasoning=str(raw.get("reasoning") or ""),
        )


@runtime_checkable
class PaymentGateway(Protocol):
    async def transfer_to_freelancer(
        self, amount: Decimal, currency: str, payout_account_id: str, description: str
    ) -> GatewayResult: ...

    async def create_deposit_intent(
        self,
        amount: Decimal,
        currency: str,
        description: str,
        payment_method_ref: str,
        customer_ref: Optional[str],
    ) -> GatewayResult: ...

    async def refund_to_client(
        self, amount: Decimal, currency: str, customer_ref: Optional[str], description: str
    ) -> GatewayResult: ...


@runtime_checkable
class ContentModerator(Protocol):
    async def moderate(self, kind: str, content: Dict[str, Any]) -> ModerationResult: ...


@runtime_checkable
class DisputeAdvisor(Protocol):
    async def analyze_dispute(self, context: Dict[str, Any]) -> DisputeAnalysis: ...


@runtime_checkable
class NotificationSink(Protocol):
    async def notify(self, project_id: str, event_name: str, payload: Dict[str, Any]) -> None: ...


@runtime_checkable
class AuditSink(Protocol):
    async def log_event(
        self,
        action: str,
        actor_id: str,
        entity_type: str,
        entity_id: str,
        changes: Dict[str, Any],
    ) -> None: ...
