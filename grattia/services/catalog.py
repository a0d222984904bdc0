"""
Reward Catalog - Goody and Rye product adapters plus reward import.

Products fetched from an external catalog are normalised to CatalogProduct
and materialised as reward rows. A reward's points_cost is computed once at
import time as round(price_in_dollars × multiplier) and never recalculated.

NO DICTIONARIES - All data uses strongly typed models.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any
from uuid import UUID, uuid4

import httpx
from sqlalchemy import delete, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from grattia.config import Settings, settings
from grattia.db.models import Reward
from grattia.exceptions import (
    CatalogProviderError,
    DuplicateRewardError,
    InvalidOperationError,
    RewardNotFoundError,
    WriteVerificationError,
)
from grattia.models.api import RewardSource
from grattia.models.domain import CatalogProduct
from grattia.observability.metrics import metrics
from grattia.observability.tracing import trace_operation

logger = get_logger(__name__)

GIFT_CARD_MARKERS = ("gift card", "gift certificate", "egift")

REQUEST_AMAZON_PRODUCT = """
mutation RequestAmazonProduct($url: String!) {
  requestAmazonProductByURL(input: { url: $url }) {
    productId
  }
}
"""

PRODUCT_BY_ID = """
query ProductByID($id: ID!) {
  productByID(input: { id: $id, marketplace: AMAZON }) {
    id
    title
    description
    images { url }
    price { value currency }
    url
  }
}
"""


def compute_points_cost(price: Decimal, multiplier: Decimal) -> int:
    """
    Points needed to redeem a product priced at ``price`` dollars.

    Rounds half away from zero, so 19.99 × 1.5 = 29.985 becomes 30. A product
    that would round to zero points cannot be imported.
    """
    if price <= 0:
        raise InvalidOperationError("Product price must be positive")
    if multiplier <= 0:
        raise InvalidOperationError("Multiplier must be positive")
    cost = int((price * multiplier).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if cost < 1:
        raise InvalidOperationError("Product is too cheap to cost at least one point")
    return cost


def is_gift_card(subtitle: str | None) -> bool:
    """Goody flags gift cards only in free-text subtitles."""
    if not subtitle:
        return False
    lowered = subtitle.lower()
    return any(marker in lowered for marker in GIFT_CARD_MARKERS)


def _to_decimal(value: Any, provider: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise CatalogProviderError(provider, f"Invalid price: {value!r}") from exc


def _build_product(provider: str, **fields: Any) -> CatalogProduct:
    try:
        return CatalogProduct(**fields)
    except ValueError as exc:
        raise CatalogProviderError(provider, str(exc)) from exc


def parse_goody_product(data: dict[str, Any]) -> CatalogProduct:
    """Normalise a Goody product payload. Goody prices are in dollars."""
    if not data.get("id") or not data.get("name"):
        raise CatalogProviderError("goody", "Product payload missing id or name")

    image_url = None
    for image in (data.get("images") or []) + (data.get("variants") or []):
        url = ((image or {}).get("image_large") or {}).get("url")
        if url:
            image_url = url
            break

    subtitle = data.get("subtitle")
    return _build_product(
        "goody",
        source=RewardSource.GOODY,
        external_id=str(data["id"]),
        name=data["name"],
        description=data.get("recipient_description") or subtitle,
        price=_to_decimal(data.get("price") or 0, "goody"),
        currency="USD",
        image_url=image_url,
        product_url=None,
        brand_name=(data.get("brand") or {}).get("name"),
        is_gift_card=is_gift_card(subtitle),
    )


def parse_rye_product(data: dict[str, Any]) -> CatalogProduct:
    """Normalise a Rye productByID payload. Rye prices are in minor units."""
    if not data.get("id") or not data.get("title"):
        raise CatalogProviderError("rye", "Product payload missing id or title")

    price = data.get("price") or {}
    images = data.get("images") or []
    return _build_product(
        "rye",
        source=RewardSource.RYE,
        external_id=str(data["id"]),
        name=data["title"],
        description=data.get("description") or None,
        price=_to_decimal(price.get("value") or 0, "rye") / 100,
        currency=(price.get("currency") or "USD").upper(),
        image_url=images[0].get("url") if images else None,
        product_url=data.get("url"),
        brand_name=None,
    )


class GoodyCatalogClient:
    """Goody REST catalog."""

    def __init__(
        self,
        api_key: str,
        base_url: str,
        timeout: float = 15.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http_client = http_client

    async def list_products(self, page: int = 1, per_page: int = 50) -> list[CatalogProduct]:
        """One page of the catalog."""
        payload = await self._get("/products", params={"page": page, "per_page": per_page})
        items = payload.get("data")
        if not isinstance(items, list):
            raise CatalogProviderError("goody", "Invalid response structure")
        products = []
        for item in items:
            try:
                products.append(parse_goody_product(item))
            except CatalogProviderError as exc:
                logger.warning("goody_product_skipped", product_id=item.get("id"), error=str(exc))
        return products

    async def fetch_all_gift_cards(
        self, per_page: int = 50, max_pages: int = 100
    ) -> list[CatalogProduct]:
        """Walk every page and keep the gift cards."""
        gift_cards: list[CatalogProduct] = []
        for page in range(1, max_pages + 1):
            products = await self.list_products(page=page, per_page=per_page)
            gift_cards.extend(p for p in products if p.is_gift_card)
            if len(products) < per_page:
                break
        logger.info("goody_gift_cards_fetched", count=len(gift_cards))
        return gift_cards

    async def get_product(self, product_id: str) -> CatalogProduct:
        payload = await self._get(f"/products/{product_id}")
        return parse_goody_product(payload.get("data", payload))

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        if not self.api_key:
            raise CatalogProviderError("goody", "GOODY_API_KEY not configured")

        headers = {"Authorization": f"Bearer {self.api_key}", "Accept": "application/json"}
        url = f"{self.base_url}{path}"
        try:
            if self._http_client is not None:
                response = await self._http_client.get(
                    url, params=params, headers=headers, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(url, params=params, headers=headers)
        except httpx.HTTPError as exc:
            logger.error("goody_request_failed", path=path, error=str(exc))
            raise CatalogProviderError("goody", f"Request failed: {exc}") from exc

        if response.status_code in (401, 403):
            raise CatalogProviderError("goody", f"Authentication failed ({response.status_code})")
        if response.status_code == 404:
            raise CatalogProviderError("goody", "Product not found")
        if response.status_code >= 400:
            logger.error("goody_api_error", status=response.status_code, error=response.text[:500])
            raise CatalogProviderError("goody", f"API error: {response.status_code}")

        result: dict[str, Any] = response.json()
        return result


class RyeCatalogClient:
    """Rye GraphQL catalog (Amazon products by URL)."""

    def __init__(
        self,
        api_key: str,
        shopper_ip: str,
        graphql_url: str,
        timeout: float = 15.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.shopper_ip = shopper_ip
        self.graphql_url = graphql_url
        self.timeout = timeout
        self._http_client = http_client

    async def request_product_by_url(self, url: str) -> CatalogProduct:
        """Register an Amazon URL with Rye, then fetch the product details."""
        requested = await self._execute(REQUEST_AMAZON_PRODUCT, {"url": url})
        product_id = (requested.get("requestAmazonProductByURL") or {}).get("productId")
        if not product_id:
            raise CatalogProviderError("rye", "Invalid product request data received")

        detail = await self._execute(PRODUCT_BY_ID, {"id": product_id})
        product = detail.get("productByID")
        if not product:
            raise CatalogProviderError("rye", "Invalid product detail data received")
        return parse_rye_product(product)

    async def _execute(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        if not self.api_key:
            raise CatalogProviderError("rye", "RYE_API_KEY not configured")

        headers = {
            "Authorization": self.api_key,
            "Rye-Shopper-IP": self.shopper_ip,
            "Content-Type": "application/json",
        }
        body = {"query": query, "variables": variables}
        try:
            if self._http_client is not None:
                response = await self._http_client.post(
                    self.graphql_url, json=body, headers=headers, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.graphql_url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            logger.error("rye_request_failed", error=str(exc))
            raise CatalogProviderError("rye", f"Request failed: {exc}") from exc

        if response.status_code >= 400:
            logger.error("rye_api_error", status=response.status_code, error=response.text[:500])
            raise CatalogProviderError("rye", f"API error: {response.status_code}")

        payload: dict[str, Any] = response.json()
        errors = payload.get("errors")
        if errors:
            message = "; ".join(str(e.get("message", e)) for e in errors)
            logger.error("rye_graphql_error", error=message)
            raise CatalogProviderError("rye", f"GraphQL error: {message}")
        return payload.get("data") or {}


def build_goody_client(config: Settings = settings) -> GoodyCatalogClient:
    return GoodyCatalogClient(
        api_key=config.goody_api_key,
        base_url=config.goody_api_url,
        timeout=config.catalog_http_timeout,
    )


def build_rye_client(config: Settings = settings) -> RyeCatalogClient:
    return RyeCatalogClient(
        api_key=config.rye_api_key,
        shopper_ip=config.rye_shopper_ip,
        graphql_url=config.rye_graphql_url,
        timeout=config.catalog_http_timeout,
    )


class RewardCatalogService:
    """Imports external products as rewards and manages the reward list."""

    def __init__(
        self,
        session: AsyncSession,
        goody: GoodyCatalogClient,
        rye: RyeCatalogClient,
    ) -> None:
        self.session = session
        self.goody = goody
        self.rye = rye

    async def fetch_product(self, source: RewardSource, reference: str) -> CatalogProduct:
        """Goody references are product ids; Rye references are Amazon URLs."""
        if source == RewardSource.GOODY:
            return await self.goody.get_product(reference)
        if not reference.startswith(("http://", "https://")):
            raise InvalidOperationError("Rye imports require a product URL")
        return await self.rye.request_product_by_url(reference)

    async def import_product(
        self,
        source: RewardSource,
        reference: str,
        multiplier: Decimal,
        company_id: UUID | None,
        created_by: UUID | None = None,
        stock: int | None = None,
    ) -> Reward:
        """
        Fetch a product and insert it as a reward.

        Raises:
            CatalogProviderError: provider request failed
            DuplicateRewardError: same product already imported for this company
            InvalidOperationError: product would cost less than one point
        """
        try:
            with trace_operation("catalog_fetch_product", source=source.value):
                product = await self.fetch_product(source, reference)
        except CatalogProviderError:
            metrics.record_catalog_import(source.value, False)
            raise

        if await self._find_existing(company_id, source, product.external_id) is not None:
            metrics.record_catalog_import(source.value, False)
            raise DuplicateRewardError(source.value, product.external_id)

        reward = Reward(
            id=uuid4(),
            company_id=company_id,
            name=product.name,
            description=product.description,
            points_cost=compute_points_cost(product.price, multiplier),
            source=source.value,
            external_id=product.external_id,
            product_url=product.product_url,
            image_url=product.image_url,
            brand_name=product.brand_name,
            price_minor=product.price_minor,
            multiplier=multiplier,
            stock=stock,
            created_by=created_by,
        )
        self.session.add(reward)
        try:
            await self.session.flush()
            if await self.session.get(Reward, reward.id) is None:
                raise WriteVerificationError(f"Reward {reward.id} not found after insert")
            await self.session.commit()
        except IntegrityError as exc:
            # Lost a race with a concurrent import of the same product
            await self.session.rollback()
            metrics.record_catalog_import(source.value, False)
            raise DuplicateRewardError(source.value, product.external_id) from exc

        metrics.record_catalog_import(source.value, True)
        logger.info(
            "reward_imported",
            reward_id=str(reward.id),
            company_id=str(company_id) if company_id else None,
            source=source.value,
            external_id=product.external_id,
            price=str(product.price),
            multiplier=str(multiplier),
            points_cost=reward.points_cost,
        )
        return reward

    async def list_rewards(self, company_id: UUID) -> list[Reward]:
        """Company rewards plus global rewards."""
        stmt = (
            select(Reward)
            .where(or_(Reward.company_id == company_id, Reward.company_id.is_(None)))
            .order_by(Reward.points_cost, Reward.name)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def delete_reward(self, company_id: UUID, reward_id: UUID) -> None:
        """
        Delete one of the company's own rewards.

        Raises:
            RewardNotFoundError: missing, global, or another company's reward
        """
        reward = await self.session.get(Reward, reward_id)
        if reward is None or reward.company_id != company_id:
            raise RewardNotFoundError(reward_id)

        try:
            await self.session.execute(delete(Reward).where(Reward.id == reward_id))
            await self.session.commit()
        except IntegrityError as exc:
            await self.session.rollback()
            raise InvalidOperationError(
                "Reward has redemptions and cannot be deleted"
            ) from exc
        logger.info("reward_deleted", reward_id=str(reward_id), company_id=str(company_id))

    async def _find_existing(
        self, company_id: UUID | None, source: RewardSource, external_id: str
    ) -> Reward | None:
        company_match = (
            Reward.company_id.is_(None) if company_id is None else Reward.company_id == company_id
        )
        stmt = select(Reward).where(
            company_match,
            Reward.source == source.value,
            Reward.external_id == external_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
