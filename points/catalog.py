"""
Server-side reward catalog.

The catalog is the only authority on what a reward costs. Clients send a
title and the cost they were shown; both are checked against this table and
the client value is never used for the debit.
"""

import json
import logging
from typing import Iterable, Optional

from pydantic import ValidationError as PydanticValidationError

from .errors import CatalogError, InvalidRewardError
from .models import RewardCategory, RewardDefinition

logger = logging.getLogger(__name__)


DEFAULT_REWARDS = (
    RewardDefinition(
        reward_id="₹50 Ride Voucher",
        cost=200,
        category=RewardCategory.RIDE_VOUCHER,
        description="One free bus ride up to ₹50",
    ),
    RewardDefinition(
        reward_id="Canteen Coupon",
        cost=300,
        category=RewardCategory.FOOD_VOUCHER,
        description="Meal coupon for the campus canteen",
    ),
    RewardDefinition(
        reward_id="Blinkit Voucher",
        cost=400,
        category=RewardCategory.FOOD_VOUCHER,
        description="Grocery delivery voucher",
    ),
    RewardDefinition(
        reward_id="Amazon Gift Card",
        cost=500,
        category=RewardCategory.GIFT_CARD,
        description="Amazon gift card",
    ),
)


class RewardCatalog:
    def __init__(self, definitions: Iterable[RewardDefinition]):
        rewards: dict[str, RewardDefinition] = {}
        for definition in definitions:
            if definition.reward_id in rewards:
                raise CatalogError(f"Duplicate reward in catalog: {definition.reward_id}")
            rewards[definition.reward_id] = definition
        if not rewards:
            raise CatalogError("Reward catalog is empty")
        self._rewards = rewards

    @classmethod
    def default(cls) -> "RewardCatalog":
        return cls(DEFAULT_REWARDS)

    @classmethod
    def from_file(cls, path: str) -> "RewardCatalog":
        try:
            with open(path, encoding="utf-8") as fh:
                raw = json.load(fh)
        except (OSError, json.JSONDecodeError) as e:
            raise CatalogError(f"Cannot read reward catalog {path}: {e}") from e

        if not isinstance(raw, list):
            raise CatalogError(f"Reward catalog {path} must be a JSON list")

        try:
            definitions = [RewardDefinition(**item) for item in raw]
        except (TypeError, PydanticValidationError) as e:
            raise CatalogError(f"Invalid reward definition in {path}: {e}") from e

        logger.info("Loaded %d rewards from %s", len(definitions), path)
        return cls(definitions)

    def lookup(self, reward_id: str) -> Optional[RewardDefinition]:
        return self._rewards.get(reward_id)

    def verify(self, reward_id: str, claimed_cost: int) -> RewardDefinition:
        definition = self.lookup(reward_id)
        if definition is None:
            raise InvalidRewardError(f"Unknown reward: {reward_id!r}")
        # bool is an int subclass; True must not match a cost of 1
        if isinstance(claimed_cost, bool) or claimed_cost != definition.cost:
            raise InvalidRewardError(
                f"Cost mismatch for {reward_id!r}: claimed {claimed_cost!r}, catalog {definition.cost}"
            )
        return definition

    def list_rewards(self) -> list[RewardDefinition]:
        return sorted(self._rewards.values(), key=lambda r: (r.cost, r.reward_id))

    def __contains__(self, reward_id: str) -> bool:
        return reward_id in self._rewards

    def __len__(self) -> int:
        return len(self._rewards)
