"""Deep-scan insights report.

Aggregates everything a deep scan found into spending breakdowns, the most
frequently seen services, cancel suggestions and recommendations.

Money thresholds are expressed in the home currency; services billed in
another currency appear in the breakdowns but are never compared against
them.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from ..config import ReportConfig
from ..schemas.detection import BillingCycle, Detection, PriceChange, PriceTrend, utcnow

logger = logging.getLogger(__name__)

TOP_SERVICES_LIMIT = 10
CANCEL_SUGGESTIONS_LIMIT = 5
LOW_EVIDENCE_COUNT = 3
RARELY_USED_COUNT = 2

ANNUAL_MULTIPLIER = {
    BillingCycle.DAILY: 365,
    BillingCycle.WEEKLY: 52,
    BillingCycle.MONTHLY: 12,
    BillingCycle.QUARTERLY: 4,
    BillingCycle.YEARLY: 1,
}


def _whole(value: Decimal) -> Decimal:
    return value.quantize(Decimal("1"), rounding=ROUND_HALF_UP)


def annual_cost(amount: Decimal, cycle: BillingCycle) -> Decimal:
    """Yearly cost of one subscription; zero when the cycle is not recurring."""
    return amount * ANNUAL_MULTIPLIER.get(cycle, 0)


def monthly_equivalent(amount: Decimal, cycle: BillingCycle) -> Decimal:
    """Average monthly cost; a non-recurring amount counts as one month."""
    multiplier = ANNUAL_MULTIPLIER.get(cycle)
    if multiplier is None:
        return amount
    return amount * multiplier / 12


@dataclass
class CancelSuggestion:
    service: str
    reason: str
    monthly_amount: Decimal
    currency: str
    annual_savings: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "service": self.service,
            "reason": self.reason,
            "monthly_amount": str(self.monthly_amount),
            "currency": self.currency,
            "annual_savings": str(self.annual_savings),
        }


@dataclass
class Recommendation:
    type: str
    priority: str
    title: str
    description: str
    action: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "priority": self.priority,
            "title": self.title,
            "description": self.description,
            "action": self.action,
        }


@dataclass
class InsightsReport:
    """Aggregated deep-scan report."""

    scan_date: datetime
    total_found: int
    unique_services: int
    average_confidence: int
    estimated_annual_cost: dict[str, Decimal]
    by_category: dict[str, int] = field(default_factory=dict)
    by_billing_cycle: dict[str, int] = field(default_factory=dict)
    by_currency: dict[str, int] = field(default_factory=dict)
    by_month: dict[str, int] = field(default_factory=dict)
    top_services: list[dict[str, Any]] = field(default_factory=list)
    price_changes: list[PriceChange] = field(default_factory=list)
    cancel_suggestions: list[CancelSuggestion] = field(default_factory=list)
    recommendations: list[Recommendation] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dictionary."""
        return {
            "scan_date": self.scan_date.isoformat(),
            "summary": {
                "total_found": self.total_found,
                "unique_services": self.unique_services,
                "average_confidence": self.average_confidence,
                "estimated_annual_cost": {
                    currency: str(amount)
                    for currency, amount in self.estimated_annual_cost.items()
                },
                "price_changes_detected": len(self.price_changes),
            },
            "breakdown": {
                "by_category": dict(self.by_category),
                "by_billing_cycle": dict(self.by_billing_cycle),
                "by_currency": dict(self.by_currency),
                "by_month": dict(self.by_month),
            },
            "insights": {
                "top_services": list(self.top_services),
                "price_changes": [c.to_dict() for c in self.price_changes],
                "cancel_suggestions": [s.to_dict() for s in self.cancel_suggestions],
            },
            "recommendations": [r.to_dict() for r in self.recommendations],
        }


class InsightsBuilder:
    """Builds an InsightsReport from the detections of one deep scan."""

    def __init__(self, config: Optional[ReportConfig] = None, home_currency: str = "INR"):
        self.config = config or ReportConfig()
        self.home_currency = home_currency

    def build(
        self,
        detections: list[Detection],
        price_changes: Optional[list[PriceChange]] = None,
        scan_date: Optional[datetime] = None,
    ) -> InsightsReport:
        """
        Build the report.

        Args:
            detections: Every normalized detection of the scan, before
                deduplication (repeat sightings count as usage)
            price_changes: Price changes found during the scan
            scan_date: Report timestamp (default: now)
        """
        price_changes = price_changes or []
        named = [d for d in detections if d.normalized_service_name]

        service_counts = Counter(d.normalized_service_name for d in named)
        representatives = self._representatives(named)

        total_confidence = sum(d.confidence for d in named)
        report = InsightsReport(
            scan_date=scan_date or utcnow(),
            total_found=len(named),
            unique_services=len(service_counts),
            average_confidence=round(total_confidence / len(named)) if named else 0,
            estimated_annual_cost=self._annual_costs(representatives.values()),
            by_category=dict(Counter(d.category.value for d in named)),
            by_billing_cycle=dict(Counter(d.billing_cycle.value for d in named)),
            by_currency=dict(Counter(d.currency or "Unknown" for d in named)),
            by_month=dict(
                Counter(d.last_seen.strftime("%b") for d in named if d.last_seen is not None)
            ),
            top_services=[
                {"name": name, "detection_count": count}
                for name, count in sorted(service_counts.items(), key=lambda kv: (-kv[1], kv[0]))[
                    :TOP_SERVICES_LIMIT
                ]
            ],
            price_changes=list(price_changes),
        )

        suggestions = self._cancel_suggestions(representatives, service_counts)
        report.cancel_suggestions = suggestions[:CANCEL_SUGGESTIONS_LIMIT]
        report.recommendations = self._recommendations(report, suggestions)

        logger.info(
            "Insights: %d found, %d unique, %d cancel suggestions",
            report.total_found,
            report.unique_services,
            len(report.cancel_suggestions),
        )
        return report

    @staticmethod
    def _representatives(detections: list[Detection]) -> dict[str, Detection]:
        """Highest-priced sighting per service."""
        result: dict[str, Detection] = {}
        for d in detections:
            if d.amount is None:
                continue
            current = result.get(d.normalized_service_name)
            if current is None or current.amount < d.amount:
                result[d.normalized_service_name] = d
        return result

    @staticmethod
    def _annual_costs(representatives) -> dict[str, Decimal]:
        totals: dict[str, Decimal] = {}
        for d in representatives:
            cost = annual_cost(d.amount, d.billing_cycle)
            if cost:
                totals[d.currency] = totals.get(d.currency, Decimal("0")) + cost
        return {currency: _whole(total) for currency, total in sorted(totals.items())}

    def _cancel_suggestions(
        self, representatives: dict[str, Detection], service_counts: Counter
    ) -> list[CancelSuggestion]:
        threshold = Decimal(str(self.config.expense_threshold))
        suggestions = []
        for name, d in representatives.items():
            if d.currency != self.home_currency:
                continue
            monthly = monthly_equivalent(d.amount, d.billing_cycle)
            count = service_counts[name]
            if monthly > threshold and count < LOW_EVIDENCE_COUNT:
                suggestions.append(
                    CancelSuggestion(
                        service=name,
                        reason=(
                            "Rarely used (few sightings)"
                            if count < RARELY_USED_COUNT
                            else "Expensive subscription"
                        ),
                        monthly_amount=_whole(monthly),
                        currency=d.currency,
                        annual_savings=_whole(monthly * 12),
                    )
                )
        suggestions.sort(key=lambda s: (-s.monthly_amount, s.service))
        return suggestions

    def _recommendations(
        self, report: InsightsReport, suggestions: list[CancelSuggestion]
    ) -> list[Recommendation]:
        recommendations = []
        currency = self.home_currency
        home_cost = report.estimated_annual_cost.get(currency, Decimal("0"))

        if home_cost > Decimal(str(self.config.high_spending_threshold)):
            recommendations.append(
                Recommendation(
                    type="high_spending",
                    priority="high",
                    title="High Annual Subscription Cost",
                    description=(
                        f"You're spending approximately {currency} {home_cost:,} "
                        "annually on subscriptions."
                    ),
                    action="Review your subscriptions and consider canceling unused services.",
                )
            )

        increases = [c for c in report.price_changes if c.trend == PriceTrend.INCREASE]
        if increases:
            parts = []
            for c in increases:
                if c.change_percentage is not None:
                    parts.append(f"{c.service_name}: +{c.change_percentage:.1f}%")
                else:
                    parts.append(f"{c.service_name}: +{c.change_amount} {c.currency}")
            recommendations.append(
                Recommendation(
                    type="price_increase",
                    priority="medium",
                    title=(
                        f"{len(increases)} Price Increase{'s' if len(increases) > 1 else ''} "
                        "Detected"
                    ),
                    description=", ".join(parts),
                    action="Review these subscriptions to see if they still provide value.",
                )
            )

        if report.unique_services > self.config.overload_service_count:
            recommendations.append(
                Recommendation(
                    type="subscription_overload",
                    priority="medium",
                    title="Multiple Active Subscriptions",
                    description=f"You have {report.unique_services} different subscriptions.",
                    action="Consider consolidating services or using family plans to save money.",
                )
            )

        if suggestions:
            top = suggestions[0]
            recommendations.append(
                Recommendation(
                    type="cancel_suggestion",
                    priority="high",
                    title="Potential Savings Identified",
                    description=(
                        f"You could save up to {top.currency} {top.annual_savings:,}/year "
                        f"by canceling {top.service}."
                    ),
                    action="Review rarely used expensive subscriptions.",
                )
            )

        return recommendations
