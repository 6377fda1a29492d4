"""Subscription tiers: limits and host port pools."""

import math
from dataclasses import dataclass
from enum import Enum


class Tier(str, Enum):
    FREE = "FREE"
    HOBBY = "HOBBY"
    PRO = "PRO"
    ENTERPRISE = "ENTERPRISE"

    @classmethod
    def parse(cls, value) -> "Tier":
        """Resolve a stored tier string; unknown values fall back to FREE."""
        if isinstance(value, Tier):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            return cls.FREE

    @property
    def rank(self) -> int:
        return TIER_ORDER[self]

    def __lt__(self, other):
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank >= other.rank


# Hierarchy: FREE < HOBBY < PRO < ENTERPRISE
TIER_ORDER = {
    Tier.FREE: 1,
    Tier.HOBBY: 2,
    Tier.PRO: 3,
    Tier.ENTERPRISE: 4,
}


class WebhookPolicy(str, Enum):
    none = "none"
    opened_only = "opened-only"
    all = "all"


@dataclass(frozen=True)
class PortPool:
    min: int
    max: int
    exclusive: bool

    def __contains__(self, port: int) -> bool:
        return self.min <= port <= self.max

    def ports(self) -> range:
        return range(self.min, self.max + 1)


@dataclass(frozen=True)
class TierLimits:
    max_projects: float
    max_concurrent_builds: float
    max_live_previews: float
    webhooks: WebhookPolicy
    port_pool: PortPool

    @property
    def allows_webhooks(self) -> bool:
        return self.webhooks != WebhookPolicy.none

    def webhook_deploys(self, action: str) -> bool:
        """Whether a pull_request `action` delivered by webhook may start a build."""
        if self.webhooks == WebhookPolicy.all:
            return True
        if self.webhooks == WebhookPolicy.opened_only:
            return action == "opened"
        return False


TIER_LIMITS = {
    Tier.FREE: TierLimits(
        max_projects=1,
        max_concurrent_builds=1,
        max_live_previews=1,
        webhooks=WebhookPolicy.none,
        port_pool=PortPool(5500, 5700, exclusive=False),
    ),
    Tier.HOBBY: TierLimits(
        max_projects=2,
        max_concurrent_builds=1,
        max_live_previews=3,
        webhooks=WebhookPolicy.opened_only,
        port_pool=PortPool(5500, 5800, exclusive=False),
    ),
    Tier.PRO: TierLimits(
        max_projects=10,
        max_concurrent_builds=3,
        max_live_previews=10,
        webhooks=WebhookPolicy.all,
        port_pool=PortPool(5000, 5400, exclusive=True),
    ),
    Tier.ENTERPRISE: TierLimits(
        max_projects=math.inf,
        max_concurrent_builds=math.inf,
        max_live_previews=math.inf,
        webhooks=WebhookPolicy.all,
        port_pool=PortPool(4001, 4800, exclusive=True),
    ),
}


def get_tier_limits(tier) -> TierLimits:
    return TIER_LIMITS[Tier.parse(tier)]
