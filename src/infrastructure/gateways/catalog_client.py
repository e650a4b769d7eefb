# src/infrastructure/gateways/catalog_client.py

import logging
from decimal import Decimal
from functools import lru_cache
from typing import Optional

import httpx

from src import config
from src.application.ports import ServicePricing
from src.domain.exceptions import CollaboratorUnavailableError
from src.domain.settlement import valid_rate_or_none

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def _get_catalog_http_client() -> httpx.Client:
    return httpx.Client(
        base_url=config.CATALOG_SERVICE_URL,
        timeout=httpx.Timeout(config.COLLABORATOR_TIMEOUT_SECONDS),
        follow_redirects=True,
    )


@lru_cache(maxsize=1)
def _get_availability_http_client() -> httpx.Client:
    return httpx.Client(
        base_url=config.AVAILABILITY_SERVICE_URL,
        timeout=httpx.Timeout(config.COLLABORATOR_TIMEOUT_SECONDS),
        follow_redirects=True,
    )


class CatalogClient:
    """
    Thin wrapper around the catalog service.
    Pricing misses are reported as None; transport errors surface as
    CollaboratorUnavailableError because a booking cannot be priced without them.
    """

    def __init__(self, client: Optional[httpx.Client] = None):
        self._override = client

    @property
    def _client(self) -> httpx.Client:
        return self._override or _get_catalog_http_client()

    def get_service_pricing(self, service_id: str) -> Optional[ServicePricing]:
        try:
            resp = self._client.get(f"/services/{service_id}/pricing")
        except httpx.RequestError as exc:
            raise CollaboratorUnavailableError(
                f"Catalog unreachable: {exc}"
            ) from exc

        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise CollaboratorUnavailableError(
                f"Catalog returned {resp.status_code} for service {service_id}"
            )

        body = resp.json()
        return ServicePricing(
            price=Decimal(str(body["price"])),
            duration=int(body.get("duration", 0)),
            commission_rate=valid_rate_or_none(
                body.get("commission_rate"), f"catalog service {service_id}"
            ),
            category=body.get("category") or "other",
        )

    def get_provider_commission(self, provider_id: str) -> Optional[Decimal]:
        """Falls back to None on any error so settlement can use the next rate."""
        try:
            resp = self._client.get(f"/providers/{provider_id}/commission")
            if resp.status_code >= 400 or not resp.content:
                return None
            return valid_rate_or_none(
                resp.json().get("commission_rate"), f"catalog provider {provider_id}"
            )
        except (httpx.RequestError, ValueError):
            logger.warning(
                "Provider commission lookup failed. provider_id=%s",
                provider_id,
                exc_info=True,
            )
            return None


class AvailabilityClient:
    """
    Thin wrapper around the provider availability service.
    Pool reads degrade to an empty list; single-provider checks fail closed.
    """

    def __init__(self, client: Optional[httpx.Client] = None):
        self._override = client

    @property
    def _client(self) -> httpx.Client:
        return self._override or _get_availability_http_client()

    def is_available(self, provider_id: str) -> bool:
        try:
            resp = self._client.get(f"/providers/{provider_id}/availability")
        except httpx.RequestError as exc:
            raise CollaboratorUnavailableError(
                f"Availability service unreachable: {exc}"
            ) from exc

        if resp.status_code == 404:
            return False
        if resp.status_code >= 400:
            raise CollaboratorUnavailableError(
                f"Availability service returned {resp.status_code}"
            )
        return bool(resp.json().get("is_available", False))

    def list_available(self, category: str) -> list[str]:
        try:
            resp = self._client.get(
                "/providers/available",
                params={"category": category},
            )
            if resp.status_code >= 400 or not resp.content:
                return []
            return [str(provider_id) for provider_id in resp.json()]
        except (httpx.RequestError, ValueError):
            logger.warning(
                "Available provider lookup failed. category=%s",
                category,
                exc_info=True,
            )
            return []
