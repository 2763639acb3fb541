"""Usage snapshots and cost estimation for discovery providers.

Everything here is read-only reporting: nothing in this module takes part in
admission control, so pricing changes cannot affect request gating.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from .circuit_breaker import CircuitState
from .models import DiscoverySource


@dataclass(frozen=True)
class CostEstimate:
    """Monthly cost breakdown for one provider."""

    direct_cost: float
    opportunity_cost: float
    total_cost: float
    tier: str
    notes: str = ""
    currency: str = "USD"
    period: str = "month"

    def cost_per_request(self, total_requests: int) -> float:
        if total_requests <= 0:
            return 0.0
        return self.total_cost / total_requests

    @property
    def potential_savings(self) -> float:
        return max(0.0, self.opportunity_cost - self.direct_cost * 0.1)

    @property
    def is_optimal_tier(self) -> bool:
        return self.opportunity_cost <= self.direct_cost * 0.2


# Crossref: free under a fair-use volume, commercial plan beyond it.
CROSSREF_FAIR_USE_REQUESTS = 50_000
CROSSREF_COMMERCIAL_PER_REQUEST = 0.001

# Semantic Scholar: free tier, premium per request, flat enterprise tier.
SEMANTIC_SCHOLAR_FREE_REQUESTS = 1_000
SEMANTIC_SCHOLAR_ENTERPRISE_THRESHOLD = 10_000
SEMANTIC_SCHOLAR_PREMIUM_PER_REQUEST = 0.002
SEMANTIC_SCHOLAR_ENTERPRISE_MONTHLY = 500.0

# Perplexity: pay-per-use, Pro subscription, enterprise.
PERPLEXITY_PER_REQUEST = 0.03
PERPLEXITY_PRO_MONTHLY = 20.0
PERPLEXITY_PRO_REQUESTS = 9_000
PERPLEXITY_ENTERPRISE_MONTHLY = 300.0
PERPLEXITY_ENTERPRISE_REQUESTS = 50_000
PERPLEXITY_PRO_OVERAGE_FACTOR = 1.5
PERPLEXITY_ENTERPRISE_OVERAGE_FACTOR = 2.0
PERPLEXITY_PEAK_SURCHARGE = 0.15
PERPLEXITY_FAILED_REQUEST_FACTOR = 0.3


def _crossref_cost(total: int) -> CostEstimate:
    opportunity = 0.0
    if total > CROSSREF_FAIR_USE_REQUESTS:
        opportunity = (total - CROSSREF_FAIR_USE_REQUESTS) * CROSSREF_COMMERCIAL_PER_REQUEST
    return CostEstimate(
        direct_cost=0.0,
        opportunity_cost=opportunity,
        total_cost=opportunity,
        tier="Fair Use",
        notes="Free tier with fair use policy. Commercial pricing if exceeded.",
    )


def _semantic_scholar_cost(total: int) -> CostEstimate:
    direct = 0.0
    opportunity = 0.0
    tier = "Free"
    if total > SEMANTIC_SCHOLAR_FREE_REQUESTS:
        if total > SEMANTIC_SCHOLAR_ENTERPRISE_THRESHOLD:
            direct = SEMANTIC_SCHOLAR_ENTERPRISE_MONTHLY
            tier = "Enterprise"
        else:
            opportunity = (total - SEMANTIC_SCHOLAR_FREE_REQUESTS) * SEMANTIC_SCHOLAR_PREMIUM_PER_REQUEST
            tier = "Premium"
    return CostEstimate(
        direct_cost=direct,
        opportunity_cost=opportunity,
        total_cost=direct + opportunity,
        tier=tier,
        notes="Free tier with rate limits. Premium/Enterprise available for higher usage.",
    )


def _is_peak_hour(at: Optional[datetime]) -> bool:
    return at is not None and 9 <= at.hour <= 17


def _perplexity_cost(total: int, failed: int, last_request_at: Optional[datetime]) -> CostEstimate:
    opportunity = 0.0
    if total <= PERPLEXITY_PRO_REQUESTS:
        pay_per_use = total * PERPLEXITY_PER_REQUEST
        if pay_per_use > PERPLEXITY_PRO_MONTHLY:
            direct, tier = PERPLEXITY_PRO_MONTHLY, "Pro"
        else:
            direct, tier = pay_per_use, "Pay-per-use"
    elif total <= PERPLEXITY_ENTERPRISE_REQUESTS:
        pro_with_overage = PERPLEXITY_PRO_MONTHLY + (
            (total - PERPLEXITY_PRO_REQUESTS) * PERPLEXITY_PER_REQUEST * PERPLEXITY_PRO_OVERAGE_FACTOR
        )
        if pro_with_overage > PERPLEXITY_ENTERPRISE_MONTHLY:
            direct, tier = PERPLEXITY_ENTERPRISE_MONTHLY, "Enterprise"
        else:
            direct, tier = pro_with_overage, "Pro + Overage"
    else:
        direct, tier = PERPLEXITY_ENTERPRISE_MONTHLY, "Enterprise + Overage"
        opportunity = (
            (total - PERPLEXITY_ENTERPRISE_REQUESTS) * PERPLEXITY_PER_REQUEST * PERPLEXITY_ENTERPRISE_OVERAGE_FACTOR
        )

    surcharge = direct * PERPLEXITY_PEAK_SURCHARGE if _is_peak_hour(last_request_at) else 0.0
    direct += surcharge
    failure_cost = failed * PERPLEXITY_PER_REQUEST * PERPLEXITY_FAILED_REQUEST_FACTOR
    opportunity += failure_cost
    return CostEstimate(
        direct_cost=direct,
        opportunity_cost=opportunity,
        total_cost=direct + opportunity,
        tier=tier,
        notes=f"Includes peak time surcharge: ${surcharge:.2f}, failure costs: ${failure_cost:.2f}",
    )


def estimate_monthly_cost(
    source: DiscoverySource,
    total_requests: int,
    failed_requests: int = 0,
    last_request_at: Optional[datetime] = None,
) -> CostEstimate:
    """Translate a month of request volume into an estimated cost."""
    if source is DiscoverySource.CROSSREF:
        return _crossref_cost(total_requests)
    if source is DiscoverySource.SEMANTIC_SCHOLAR:
        return _semantic_scholar_cost(total_requests)
    if source is DiscoverySource.PERPLEXITY:
        return _perplexity_cost(total_requests, failed_requests, last_request_at)
    return CostEstimate(0.0, 0.0, 0.0, tier="Unknown", notes=f"Unknown source: {source}")


# Warn when recent traffic reaches this share of the per-minute budget.
APPROACHING_LIMIT_RATIO = 0.85


@dataclass(frozen=True)
class APIUsageStats:
    """Point-in-time usage counters for one provider."""

    source: DiscoverySource
    total_requests: int
    successful_requests: int
    failed_requests: int
    rejected_requests: int
    circuit_state: CircuitState
    requests_last_minute: int
    average_response_time_ms: float
    rate_limit_rps: float
    last_request_time: Optional[datetime] = None

    @property
    def success_rate(self) -> float:
        if self.total_requests == 0:
            return 100.0
        return self.successful_requests / self.total_requests * 100.0

    @property
    def failure_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.failed_requests / self.total_requests * 100.0

    @property
    def is_healthy(self) -> bool:
        return self.circuit_state is CircuitState.CLOSED and self.success_rate >= 95.0

    @property
    def has_issues(self) -> bool:
        return self.circuit_state is CircuitState.OPEN or self.failure_rate > 10.0

    @property
    def status_description(self) -> str:
        if self.is_healthy:
            return "Healthy - Operating normally"
        if self.circuit_state is CircuitState.OPEN:
            return "Unhealthy - Circuit breaker OPEN"
        if self.circuit_state is CircuitState.HALF_OPEN:
            return "Recovering - Circuit breaker HALF-OPEN"
        if self.failure_rate > 20.0:
            return "Degraded - High failure rate"
        if self.failure_rate > 10.0:
            return "Warning - Elevated failure rate"
        return "Normal - Minor issues detected"

    @property
    def is_approaching_limits(self) -> bool:
        budget_per_minute = self.rate_limit_rps * 60.0
        return self.requests_last_minute > budget_per_minute * APPROACHING_LIMIT_RATIO

    @property
    def recommended_action(self) -> str:
        if self.circuit_state is CircuitState.OPEN:
            return "Wait for circuit breaker timeout or investigate API issues"
        if self.is_approaching_limits:
            return "Reduce request rate to avoid hitting API limits"
        if self.failure_rate > 20.0:
            return "Investigate API failures and consider temporary rate reduction"
        if self.average_response_time_ms > 5000:
            return "API response times are slow, consider implementing caching"
        if self.is_healthy:
            return "Continue current usage pattern"
        return "Monitor closely for any developing issues"

    def estimated_cost(self) -> CostEstimate:
        return estimate_monthly_cost(
            self.source, self.total_requests, self.failed_requests, self.last_request_time
        )

    @property
    def cost_optimization_recommendation(self) -> str:
        cost = self.estimated_cost()
        if cost.total_cost == 0.0:
            return "Currently using free tier efficiently"
        if cost.total_cost > 100.0:
            return "High cost detected. Consider caching, request batching, or tier optimization"
        if cost.opportunity_cost > cost.direct_cost:
            return "Opportunity costs exceed direct costs. Consider upgrading to higher tier"
        if self.failure_rate > 5.0:
            return "High failure rate increasing costs. Improve error handling and retry logic"
        return "Cost usage appears optimized for current tier"

    @property
    def usage_summary(self) -> str:
        return (
            f"{self.source.value}: {self.total_requests} total requests "
            f"({self.success_rate:.1f}% success), Circuit: {self.circuit_state.value}, "
            f"Avg Response: {self.average_response_time_ms:.0f}ms"
        )

    def detailed_report(self) -> str:
        cost = self.estimated_cost()
        last = self.last_request_time.isoformat() if self.last_request_time else "Never"
        lines: List[str] = [
            f"=== API Usage Report: {self.source.display_name} ===",
            f"Total Requests: {self.total_requests:,}",
            f"Successful: {self.successful_requests:,} ({self.success_rate:.1f}%)",
            f"Failed: {self.failed_requests:,} ({self.failure_rate:.1f}%)",
            f"Rejected before sending: {self.rejected_requests:,}",
            f"Circuit Breaker: {self.circuit_state.value}",
            f"Last Request: {last}",
            f"Recent Activity: {self.requests_last_minute} requests/minute",
            f"Avg Response Time: {self.average_response_time_ms:.0f} ms",
            f"Status: {self.status_description}",
            f"Recommended Action: {self.recommended_action}",
            "",
            "=== Cost Analysis ===",
            f"Current Tier: {cost.tier}",
            f"Direct Cost: ${cost.direct_cost:.4f} {cost.currency}",
            f"Opportunity Cost: ${cost.opportunity_cost:.4f} {cost.currency}",
            f"Total Cost: ${cost.total_cost:.4f} {cost.currency}/{cost.period}",
            f"Cost Notes: {cost.notes}",
            f"Cost Optimization: {self.cost_optimization_recommendation}",
        ]
        return "\n".join(lines) + "\n"
