"""Eligibility evaluation.

The one rule that matters here: a provider that could not answer is an
outage, not a "no". Outages go to operations and the customer is told a
human will follow up; only a provider that actually answered "not eligible"
produces a business decline.
"""

from dataclasses import dataclass, field
from typing import Optional, Protocol

from sales_agent.logging_config import get_logger
from sales_agent.services.alert_service import alert_critical
from sales_agent.services.analytics_service import Analytics
from sales_agent.services.response_timing import now_ms
from sales_agent.services.result import Result
from sales_agent.services.state_machine import EnrichmentRequest, EnrichmentResult

logger = get_logger("eligibility_service")

PRIMARY_PROVIDER = "fnb"
TECHNICAL_FAILURE_REASONS = frozenset({"api_error", "provider_unavailable", "provider_forced_down"})
NOT_QUALIFIED = "not_qualified"
SYSTEM_OUTAGE_CODE = "system_outage"


@dataclass
class ProviderCheckResult:
    eligible: bool
    credit: float = 0
    reason: Optional[str] = None
    name: Optional[str] = None


@dataclass
class DegradationWarning:
    failed_provider: str
    working_provider: str
    errors: list[str] = field(default_factory=list)


@dataclass
class EligibilityEvaluation:
    result: ProviderCheckResult
    source: str
    warnings: Optional[list[DegradationWarning]] = None


@dataclass
class ProviderResults:
    fnb: Result[ProviderCheckResult]


class SystemOutageError(Exception):
    def __init__(self, provider_error: Exception, provider: str = PRIMARY_PROVIDER):
        self.provider_error = provider_error
        self.provider = provider
        super().__init__(f"System outage: {provider} provider failed")


class EligibilityProvider(Protocol):
    async def check_eligibility(self, identity_id: str, user_id: Optional[str] = None) -> ProviderCheckResult: ...


def is_technical_failure(result: Result[ProviderCheckResult]) -> bool:
    if not result.ok:
        return True
    return result.value.reason in TECHNICAL_FAILURE_REASONS


def evaluate_results(results: ProviderResults) -> Result[EligibilityEvaluation]:
    """Classify a provider outcome as eligible, declined, or outage."""
    fnb = results.fnb

    if is_technical_failure(fnb):
        if not fnb.ok:
            provider_error = fnb.exception or Exception(fnb.error or "FNB failed with unknown error")
        else:
            provider_error = Exception(f"FNB reported {fnb.value.reason}")
        outage = SystemOutageError(provider_error)
        return Result.failure(str(outage), SYSTEM_OUTAGE_CODE, exception=outage)

    if fnb.value.eligible:
        return Result.success(EligibilityEvaluation(result=fnb.value, source=PRIMARY_PROVIDER))

    return Result.success(
        EligibilityEvaluation(
            result=ProviderCheckResult(eligible=False, credit=0, reason=NOT_QUALIFIED),
            source=PRIMARY_PROVIDER,
        )
    )


class CheckEligibilityHandler:
    """Enrichment handler for ``eligibility`` requests."""

    enrichment_type = "eligibility"

    def __init__(self, provider: EligibilityProvider, analytics: Analytics):
        self._provider = provider
        self._analytics = analytics

    async def _check(self, identity_id: str, user_id: Optional[str]) -> Result[ProviderCheckResult]:
        try:
            return Result.success(await self._provider.check_eligibility(identity_id, user_id))
        except Exception as e:
            logger.warning(f"Eligibility provider call failed: {e}")
            return Result.from_exception(e, "provider_error")

    async def execute(self, identity_id: str, user_id: Optional[str] = None) -> EnrichmentResult:
        evaluation = evaluate_results(ProviderResults(fnb=await self._check(identity_id, user_id)))

        if not evaluation.ok:
            outage: SystemOutageError = evaluation.exception
            self._analytics.track(
                user_id or identity_id,
                "system_outage_detected",
                {"dni": identity_id, "errors": [str(outage.provider_error)], "timestamp": now_ms()},
            )
            logger.error(
                "FNB provider failed",
                extra={"context": {"dni": identity_id, "error": str(outage.provider_error)}},
            )
            await alert_critical(
                "Eligibility provider outage",
                {"dni": identity_id, "user_id": user_id, "error": str(outage.provider_error)},
            )
            return EnrichmentResult(
                type="eligibility_result",
                data={"status": SYSTEM_OUTAGE_CODE, "handoff_reason": "fnb_provider_down"},
            )

        result = evaluation.value.result
        if result.eligible:
            logger.info(
                "Customer eligible",
                extra={
                    "context": {
                        "dni": identity_id,
                        "user_id": user_id,
                        "source": evaluation.value.source,
                        "credit": result.credit,
                    }
                },
            )

        return EnrichmentResult(
            type="eligibility_result",
            data={
                "status": "eligible" if result.eligible else NOT_QUALIFIED,
                "eligible": result.eligible,
                "credit": result.credit,
                "name": result.name,
                "reason": result.reason,
                "needs_human": False,
            },
        )

    async def __call__(self, request: EnrichmentRequest, user_id: str) -> EnrichmentResult:
        return await self.execute(request.payload["dni"], user_id)
