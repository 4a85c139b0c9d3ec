"""
Ledgerline - Three-Way Match Tolerance Policy

Per-line tolerance bands and approval tiers. Built from settings by
default; callers may pass their own instance per tenant or per call.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from ledgerline.config import settings
from ledgerline.models.procurement import DiscrepancySeverity


@dataclass(frozen=True)
class MatchToleranceConfig:
    """Configurable matching tolerances"""

    auto_approve_percent: Decimal = Decimal("2")   # variance up to this auto-approves
    approval_percent: Decimal = Decimal("10")      # above this the line is critical
    high_value_threshold: Decimal = Decimal("50000")
    approval_value_bands: List[Decimal] = field(
        default_factory=lambda: [Decimal("10000"), Decimal("50000"), Decimal("100000")]
    )

    @classmethod
    def from_settings(cls) -> "MatchToleranceConfig":
        return cls(
            auto_approve_percent=settings.match_auto_approve_percent,
            approval_percent=settings.match_approval_percent,
            high_value_threshold=settings.match_high_value_threshold,
            approval_value_bands=settings.approval_value_bands,
        )

    def classify_line(
        self,
        quantity_variance_percent: Decimal,
        price_variance_percent: Decimal,
        exposure: Optional[Decimal] = None,
    ) -> DiscrepancySeverity:
        """
        Severity of one matched line.

        The larger of the two variances picks the band. A MEDIUM line whose
        monetary exposure exceeds the high-value threshold becomes HIGH.
        Raising either variance (and with it the exposure) never lowers
        the result.
        """
        worst = max(abs(quantity_variance_percent), abs(price_variance_percent))
        if worst == 0:
            return DiscrepancySeverity.NONE
        if worst <= self.auto_approve_percent:
            return DiscrepancySeverity.LOW
        if worst <= self.approval_percent:
            if exposure is not None and exposure > self.high_value_threshold:
                return DiscrepancySeverity.HIGH
            return DiscrepancySeverity.MEDIUM
        return DiscrepancySeverity.CRITICAL

    def approval_tier(self, invoice_total: Decimal) -> int:
        """Tier 1 below the first band, one more for each band reached."""
        tier = 1
        for band in sorted(self.approval_value_bands):
            if invoice_total >= band:
                tier += 1
        return tier

    @staticmethod
    def auto_approvable(severity: DiscrepancySeverity) -> bool:
        return severity <= DiscrepancySeverity.LOW
