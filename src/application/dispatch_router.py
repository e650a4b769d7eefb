import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from src.application.ports import AvailabilityGateway
from src.infrastructure.db.models import DispatchMode

logger = logging.getLogger(__name__)


class RejectionPolicy(str, Enum):
    REOPEN_POOL = "reopen_pool"
    NEXT_CANDIDATE = "next_candidate"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class DispatchPlan:
    mode: str
    provider_id: Optional[str] = None

    @property
    def is_targeted(self) -> bool:
        return self.mode == DispatchMode.TARGETED


class DispatchRouter:
    """
    Decides whether a booking is targeted at one provider or opened to
    the pool. Pool membership is computed at read time from availability;
    nothing here mutates provider state.
    """

    def __init__(
        self,
        availability: AvailabilityGateway,
        rejection_policy: RejectionPolicy = RejectionPolicy.REOPEN_POOL,
    ):
        self.availability = availability
        self.rejection_policy = RejectionPolicy(rejection_policy)

    def route_new_booking(self, preferred_provider_id: Optional[str]) -> DispatchPlan:
        if preferred_provider_id:
            return DispatchPlan(DispatchMode.TARGETED, preferred_provider_id)
        return DispatchPlan(DispatchMode.POOLED)

    def is_pool_eligible(self, provider_id: str, category: str) -> bool:
        if not self.availability.is_available(provider_id):
            return False
        return provider_id in self.availability.list_available(category)

    def plan_after_rejection(
        self,
        category: str,
        declined_provider_ids: Iterable[str],
    ) -> Optional[DispatchPlan]:
        """
        Returns where a rejected targeted booking goes next, or None if
        the rejection is final.
        """
        if self.rejection_policy == RejectionPolicy.TERMINAL:
            return None

        if self.rejection_policy == RejectionPolicy.NEXT_CANDIDATE:
            candidate = self.next_candidate(category, declined_provider_ids)
            if candidate is not None:
                return DispatchPlan(DispatchMode.TARGETED, candidate)
            logger.info(
                "No remaining candidate, reopening to pool. category=%s",
                category,
            )

        return DispatchPlan(DispatchMode.POOLED)

    def next_candidate(
        self,
        category: str,
        declined_provider_ids: Iterable[str],
    ) -> Optional[str]:
        excluded = set(declined_provider_ids)
        for provider_id in self.availability.list_available(category):
            if provider_id not in excluded:
                return provider_id
        return None
