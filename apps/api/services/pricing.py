"""Credit pricing for generation requests.

Everything here is pure so a client-side preview (via ``GET /generation/quote``)
and the server-side charge always compute the same figure.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict

from config import settings


@dataclass(frozen=True)
class PricingRule:
    per_unit_rate: int
    per_group_rate: int
    addon_rate: int
    minimum: int


@dataclass(frozen=True)
class CreditQuote:
    units: int
    groups: int
    addons: int
    cost: int
    breakdown: Dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, object]:
        return {
            "units": self.units,
            "groups": self.groups,
            "addons": self.addons,
            "cost": self.cost,
            "breakdown": dict(self.breakdown),
        }


def calculate_credit_cost(rule: PricingRule, *, units: int, groups: int, addons: int = 0) -> int:
    """Price a request shape: rate-weighted units, groups and add-ons, floored at the rule minimum."""
    if units < 0 or groups < 0 or addons < 0:
        raise ValueError("units, groups and addons must be non-negative")
    total = rule.per_unit_rate * units + rule.per_group_rate * groups + rule.addon_rate * addons
    return max(int(total), int(rule.minimum))


def course_pricing_rule() -> PricingRule:
    return PricingRule(
        per_unit_rate=max(int(settings.COURSE_CREDITS_PER_LESSON), 0),
        per_group_rate=max(int(settings.COURSE_CREDITS_PER_CHAPTER), 0),
        addon_rate=max(int(settings.CREDITS_IMAGE_ADDON), 0),
        minimum=max(int(settings.MINIMUM_CREDIT_COST), 0),
    )


def presentation_pricing_rule() -> PricingRule:
    return PricingRule(
        per_unit_rate=max(int(settings.PRESENTATION_CREDITS_PER_SLIDE), 0),
        per_group_rate=max(int(settings.PRESENTATION_CREDITS_PER_TIER), 0),
        addon_rate=max(int(settings.CREDITS_IMAGE_ADDON), 0),
        minimum=max(int(settings.PRESENTATION_MINIMUM_CREDIT_COST), 0),
    )


def presentation_tier(slides: int) -> int:
    """1-based size tier; each boundary in ``PRESENTATION_SLIDE_TIERS`` the deck exceeds adds one."""
    return 1 + sum(1 for boundary in settings.PRESENTATION_SLIDE_TIERS if int(slides) > int(boundary))


def _quote(rule: PricingRule, *, units: int, groups: int, addons: int) -> CreditQuote:
    cost = calculate_credit_cost(rule, units=units, groups=groups, addons=addons)
    return CreditQuote(
        units=units,
        groups=groups,
        addons=addons,
        cost=cost,
        breakdown={
            "unit_cost": rule.per_unit_rate * units,
            "group_cost": rule.per_group_rate * groups,
            "addon_cost": rule.addon_rate * addons,
            "minimum": rule.minimum,
            "total": cost,
        },
    )


def quote_course(chapters: int, lessons_per_chapter: int, include_images: bool = False) -> CreditQuote:
    return _quote(
        course_pricing_rule(),
        units=int(chapters) * int(lessons_per_chapter),
        groups=int(chapters),
        addons=1 if include_images else 0,
    )


def quote_presentation(slides: int, include_images: bool = False) -> CreditQuote:
    return _quote(
        presentation_pricing_rule(),
        units=int(slides),
        groups=presentation_tier(slides),
        addons=1 if include_images else 0,
    )
