"""
Benefits catalog API data source.

Endpoints:
- GET /api/benefits    -> {"success": true, "benefits": [...], "pagination": {...}}
- GET /api/categories  -> {"categories": [...]}
- GET /api/banks       -> {"banks": [...]}
"""

from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from catalog.datasource.base import BaseDataSource
from catalog.services.errors import ValidationError
from catalog.services.orchestrator import FetchOrchestrator, FetchResult, Resource


class Merchant(BaseModel):
    """Merchant offering a benefit."""

    name: str
    type: str | None = None


class Benefit(BaseModel):
    """A bank benefit as served by the catalog API."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="_id")
    bank: str
    network: str | None = None
    title: str = Field(alias="benefitTitle")
    discount_percentage: float | None = Field(default=None, alias="discountPercentage")
    merchant: Merchant | None = None
    categories: list[str] = Field(default_factory=list)
    available_days: list[str] = Field(default_factory=list, alias="availableDays")
    online: bool = False
    link: str | None = None
    description: str | None = None
    valid_until: str | None = Field(default=None, alias="validUntil")

    @field_validator("id", mode="before")
    @classmethod
    def _unwrap_object_id(cls, v: Any) -> Any:
        # Mongo extended JSON: {"$oid": "..."}
        if isinstance(v, dict) and "$oid" in v:
            return v["$oid"]
        return v


BENEFITS_ADAPTER: TypeAdapter[list[Benefit]] = TypeAdapter(list[Benefit])
NAMES_ADAPTER: TypeAdapter[list[str]] = TypeAdapter(list[str])


FALLBACK_BENEFITS = [
    {
        "_id": "demo-benefit-1",
        "bank": "Demo Bank",
        "network": "Demo Network",
        "benefitTitle": "Demo Benefit - 20% off meals",
        "discountPercentage": 20,
        "merchant": {"name": "Demo Restaurant", "type": "restaurant"},
        "categories": ["gastronomia"],
        "availableDays": ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday"],
        "online": False,
        "link": "https://example.com",
        "description": "Demo benefit served while the catalog is unreachable",
    }
]


def parse_benefits(payload: Any) -> list[Benefit]:
    """Validate a /api/benefits payload into Benefit models."""
    records = payload.get("benefits") if isinstance(payload, dict) else payload
    if records is None:
        raise ValidationError("Benefits payload has no 'benefits' field")
    try:
        return BENEFITS_ADAPTER.validate_python(records)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid benefits payload: {e.error_count()} error(s)",
            context={"errors": e.errors(include_url=False)},
        ) from e


def _names_parser(field: str):
    def parse(payload: Any) -> list[str]:
        names = payload.get(field) if isinstance(payload, dict) else payload
        try:
            return NAMES_ADAPTER.validate_python(names or [])
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid {field} payload: {e}") from e

    return parse


class BenefitsSource(BaseDataSource):
    """
    Benefits catalog data source.

    Serves benefits, categories and banks with the orchestrator's fallback
    chain; benefits fall back to a one-item demo list, categories and banks
    to empty lists.
    """

    SOURCE_ID = "benefits"

    BENEFITS = "benefits"
    CATEGORIES = "categories"
    BANKS = "banks"

    def __init__(self, orchestrator: FetchOrchestrator, page_size: int | None = None):
        self.page_size = page_size
        super().__init__(orchestrator)

    @property
    def source_id(self) -> str:
        return self.SOURCE_ID

    def resources(self) -> list[Resource]:
        params = {"limit": self.page_size} if self.page_size else None
        return [
            Resource(
                key=self.BENEFITS,
                url="/api/benefits",
                params=params,
                transform=parse_benefits,
                fallback=lambda: parse_benefits(FALLBACK_BENEFITS),
            ),
            Resource(
                key=self.CATEGORIES,
                url="/api/categories",
                transform=_names_parser("categories"),
                fallback=list,
            ),
            Resource(
                key=self.BANKS,
                url="/api/banks",
                transform=_names_parser("banks"),
                fallback=list,
            ),
        ]

    async def get_benefits(self, force_refresh: bool = False) -> FetchResult[list[Benefit]]:
        result = await self.fetch_typed(
            self.BENEFITS, BENEFITS_ADAPTER, force_refresh=force_refresh
        )
        logger.info(f"Fetched {len(result.data)} benefits (source: {result.source.value})")
        return result

    async def get_categories(self, force_refresh: bool = False) -> list[str]:
        result = await self.fetch_typed(
            self.CATEGORIES, NAMES_ADAPTER, force_refresh=force_refresh
        )
        return result.data

    async def get_banks(self, force_refresh: bool = False) -> list[str]:
        result = await self.fetch_typed(
            self.BANKS, NAMES_ADAPTER, force_refresh=force_refresh
        )
        return result.data
