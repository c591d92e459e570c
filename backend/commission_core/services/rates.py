"""Commission rate resolution.

A client's lead source picks which rate applies:
- ``company_driven`` leads pay the company lead rate
- anything else (self-generated, coach-driven, unknown) pays the self-gen rate

An earner's ``commission_config`` may override either rate. Missing or
unusable overrides fall back to the global defaults; resolution never fails.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from commission_core.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

COMPANY_DRIVEN = "company_driven"


@dataclass(frozen=True)
class CommissionRates:
    """Global default rates, injected rather than read from module constants."""
    company_lead_rate: Decimal = Decimal("0.50")
    self_gen_rate: Decimal = Decimal("0.70")

    def __post_init__(self):
        for name in ("company_lead_rate", "self_gen_rate"):
            value = getattr(self, name)
            if not (Decimal("0") <= value < Decimal("1")):
                raise ValueError(f"{name} must be in [0, 1), got {value}")

    @classmethod
    def from_settings(cls, s: Settings = None) -> "CommissionRates":
        s = s or default_settings
        return cls(
            company_lead_rate=Decimal(str(s.COMPANY_LEAD_RATE)),
            self_gen_rate=Decimal(str(s.SELF_GEN_RATE)),
        )


@dataclass(frozen=True)
class ResolvedRate:
    rate: Decimal
    source: str  # "override" or "global"


def _coerce_rate(value):
    """Return the override as a Decimal in [0, 1], or None if unusable."""
    if value is None or isinstance(value, bool):
        return None
    try:
        rate = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not rate.is_finite() or rate < 0 or rate > 1:
        return None
    return rate


class RateResolver:
    def __init__(self, earners, rates: CommissionRates):
        # earners: anything with get_commission_config(user_id) -> dict
        self.earners = earners
        self.rates = rates

    def resolve(self, earner_id: int, lead_source: str = None) -> ResolvedRate:
        config = self.earners.get_commission_config(earner_id) or {}

        if lead_source == COMPANY_DRIVEN:
            key, default = "company_lead_rate", self.rates.company_lead_rate
        else:
            key, default = "self_gen_rate", self.rates.self_gen_rate

        if key in config:
            override = _coerce_rate(config[key])
            if override is not None:
                return ResolvedRate(rate=override, source="override")
            logger.warning(f"Ignoring invalid {key}={config[key]!r} on earner {earner_id}, using global rate")

        return ResolvedRate(rate=default, source="global")
