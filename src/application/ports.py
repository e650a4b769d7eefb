from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol


@dataclass(frozen=True)
class ServicePricing:
    price: Decimal
    duration: int
    commission_rate: Optional[Decimal]
    category: str


class CatalogGateway(Protocol):
    def get_service_pricing(self, service_id: str) -> Optional[ServicePricing]:
        ...

    def get_provider_commission(self, provider_id: str) -> Optional[Decimal]:
        ...


class AvailabilityGateway(Protocol):
    def is_available(self, provider_id: str) -> bool:
        ...

    def list_available(self, category: str) -> list[str]:
        ...
