# src/agents/cost.py
import logging
from datetime import datetime
from typing import Optional

from src.config.settings import Settings
from src.data_access.store import CanonicalStore
from src.models.schemas import CostEntry, Tier, utcnow

logger = logging.getLogger(__name__)


def period_for(moment: datetime) -> str:
    """Billing period (calendar month) of a timestamp, e.g. ``2025-03``."""
    return moment.strftime("%Y-%m")


class CostLedger:
    """Cumulative model spend per workspace and billing period, kept in the store."""

    def __init__(self, config: Settings, store: CanonicalStore):
        self.config = config
        self.store = store

    def price_per_1k(self, tier: Tier) -> float:
        tier = Tier(tier)
        return {
            Tier.CHEAP: self.config.price_per_1k_cheap,
            Tier.MID: self.config.price_per_1k_mid,
            Tier.PREMIUM: self.config.price_per_1k_premium,
        }[tier]

    def cost_of(self, tier: Tier, input_tokens: int, output_tokens: int) -> float:
        return (input_tokens + output_tokens) / 1000.0 * self.price_per_1k(tier)

    def record(self, workspace_id: str, tier: Tier, input_tokens: int, output_tokens: int,
               when: Optional[datetime] = None) -> float:
        """
        Add one provider call to the workspace aggregate.

        Returns:
            Cost of this call
        """
        cost = self.cost_of(tier, input_tokens, output_tokens)
        entry = self.store.add_cost(
            workspace_id, period_for(when or utcnow()), cost, input_tokens, output_tokens
        )
        logger.debug(
            f"Workspace {workspace_id} spent ${cost:.6f} on {Tier(tier).value} "
            f"(period total ${entry.cost:.4f})"
        )
        return cost

    def report(self, workspace_id: str, period: Optional[str] = None) -> CostEntry:
        """Aggregate for a period (current month by default)."""
        return self.store.get_cost(workspace_id, period or period_for(utcnow()))
