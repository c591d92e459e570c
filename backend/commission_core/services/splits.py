"""Split calculation: who is owed what for one payment.

Commission is computed against the net basis (gross minus processor fee).
When a client has explicit splits they define the entire distribution; no
remainder entry is created for the primary earner, even when the splits add
up to less than 100%. Otherwise the primary earner (seller, falling back to
the assigned coach) is paid at the rate resolved for the client's lead source.
"""
import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Sequence, Union

from commission_core.core.exceptions import (
    InvalidSplitConfiguration, NoEarnerError, ZeroBasisSkip,
)
from commission_core.schemas.commission import SplitBasis, StandardBasis
from commission_core.services.directories import ClientProfile, SplitRow
from commission_core.services.rates import RateResolver

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


def quantize_money(value: Decimal) -> Decimal:
    """Round to cents, half up."""
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class EarnerCommission:
    earner_id: int
    commission_amount: Decimal
    basis: Union[StandardBasis, SplitBasis]

    @property
    def entry_type(self) -> str:
        return "split" if isinstance(self.basis, SplitBasis) else "commission"

    @property
    def split_role(self):
        return self.basis.role if isinstance(self.basis, SplitBasis) else None

    @property
    def split_percentage(self):
        return self.basis.split_pct if isinstance(self.basis, SplitBasis) else None


@dataclass
class SplitCalculation:
    gross_amount: Decimal
    basis_amount: Decimal
    commissions: List[EarnerCommission] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def total_commission(self) -> Decimal:
        return sum((c.commission_amount for c in self.commissions), Decimal("0"))


class SplitCalculator:
    def __init__(self, rate_resolver: RateResolver):
        self.rate_resolver = rate_resolver

    def calculate(
        self,
        gross: Decimal,
        fee: Decimal,
        client: ClientProfile,
        splits: Sequence[SplitRow],
    ) -> SplitCalculation:
        gross = Decimal(str(gross))
        fee = Decimal(str(fee or 0))
        basis = gross - fee

        if basis <= 0:
            raise ZeroBasisSkip(f"Basis {basis} is zero or negative")

        primary_earner_id = client.primary_earner_id
        if not primary_earner_id:
            raise NoEarnerError(client.client_id)

        result = SplitCalculation(gross_amount=gross, basis_amount=basis)

        if splits:
            self._apply_splits(result, client, splits)
        else:
            resolved = self.rate_resolver.resolve(primary_earner_id, client.lead_source)
            result.commissions.append(
                EarnerCommission(
                    earner_id=primary_earner_id,
                    commission_amount=quantize_money(basis * resolved.rate),
                    basis=StandardBasis(
                        lead_source=client.lead_source,
                        applied_rate=resolved.rate,
                        rate_source=resolved.source,
                        basis_amount=basis,
                    ),
                )
            )

        return result

    def _apply_splits(self, result: SplitCalculation, client: ClientProfile, splits: Sequence[SplitRow]):
        earner_ids = [s.user_id for s in splits]
        if len(set(earner_ids)) != len(earner_ids):
            raise InvalidSplitConfiguration(
                f"Splits for client {client.client_id} list the same earner more than once"
            )

        total_pct = sum((s.split_percentage for s in splits), Decimal("0"))
        if total_pct > HUNDRED:
            raise InvalidSplitConfiguration(
                f"Splits for client {client.client_id} total {total_pct}% (more than 100%)"
            )
        if total_pct < HUNDRED:
            message = (
                f"Splits for client {client.client_id} total {total_pct}%; "
                f"the remaining {HUNDRED - total_pct}% is not allocated"
            )
            logger.warning(message)
            result.warnings.append(message)

        for split in splits:
            result.commissions.append(
                EarnerCommission(
                    earner_id=split.user_id,
                    commission_amount=quantize_money(result.basis_amount * split.split_percentage / HUNDRED),
                    basis=SplitBasis(
                        role=split.role_in_sale,
                        split_pct=split.split_percentage,
                        basis_amount=result.basis_amount,
                    ),
                )
            )
