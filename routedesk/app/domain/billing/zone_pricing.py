"""
Zone Pricing Table.

Geographic zone -> price rule lookup. Two kinds of zone:
- FLAT: satellite cities paid a fixed amount regardless of distance
- DISTANCE_TIERED: metro zones priced by distance from the route origin

Tables are data, loaded once per calculation batch. A malformed table raises
PricingConfigurationError; it is never defaulted.
"""

import enum
import unicodedata
from decimal import Decimal
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from typing import Any, List, Optional

from routedesk.app.core.exceptions import PricingConfigurationError


def normalize_place(text: Optional[str]) -> str:
    """Lower-case, trim, collapse whitespace and fold accents ("Goiânia" -> "goiania")."""
    decomposed = unicodedata.normalize("NFKD", text or "")
    stripped = "".join(char for char in decomposed if not unicodedata.combining(char))
    return " ".join(stripped.lower().split())


class ZoneKind(str, enum.Enum):
    FLAT = "flat"
    DISTANCE_TIERED = "distance_tiered"


class DistanceTier(BaseModel):
    """Distance bracket: stops up to max_km from the origin earn amount."""
    model_config = {"frozen": True}

    max_km: float = Field(..., gt=0)
    amount: Decimal = Field(..., ge=0, decimal_places=2)


class PricingZone(BaseModel):
    model_config = {"frozen": True}

    name: str = Field(..., min_length=1)
    kind: ZoneKind
    match_terms: List[str] = Field(..., min_length=1)
    amount: Optional[Decimal] = Field(None, ge=0, decimal_places=2)  # FLAT zones
    tiers: List[DistanceTier] = Field(default_factory=list)  # DISTANCE_TIERED zones, ascending

    @field_validator("match_terms")
    @classmethod
    def normalize_terms(cls, terms: List[str]) -> List[str]:
        normalized = [normalize_place(term) for term in terms]
        if not all(normalized):
            raise ValueError("match terms must not be blank")
        return normalized

    @model_validator(mode="after")
    def check_kind(self):
        if self.kind == ZoneKind.FLAT and self.amount is None:
            raise ValueError(f"flat zone '{self.name}' needs an amount")
        if self.kind == ZoneKind.DISTANCE_TIERED:
            if not self.tiers:
                raise ValueError(f"distance-tiered zone '{self.name}' needs at least one tier")
            bounds = [tier.max_km for tier in self.tiers]
            if any(later <= earlier for earlier, later in zip(bounds, bounds[1:])):
                raise ValueError(f"tiers of zone '{self.name}' must be in strictly ascending max_km order")
        return self

    def matches(self, city: str, neighborhood: str) -> bool:
        """city and neighborhood must already be normalized."""
        return any(term in city or term in neighborhood for term in self.match_terms)

    def tier_amount(self, distance_km: float) -> Decimal:
        """Amount of the smallest tier bound >= distance; the last tier beyond every bound."""
        for tier in self.tiers:
            if distance_km <= tier.max_km:
                return tier.amount
        return self.tiers[-1].amount

    @property
    def lowest_tier_amount(self) -> Decimal:
        return self.tiers[0].amount


class ZonePricingTable(BaseModel):
    model_config = {"frozen": True}

    version: int = Field(1, ge=1)
    zones: List[PricingZone] = Field(..., min_length=1)
    default_amount: Decimal = Field(..., ge=0, decimal_places=2)
    failed_attempt_factor: Decimal = Field(..., ge=0, le=1)

    @classmethod
    def from_config(cls, data: Any) -> "ZonePricingTable":
        """
        Build a table from external configuration.

        Raises:
            PricingConfigurationError: If the configuration is malformed.
        """
        try:
            return cls.model_validate(data)
        except PydanticValidationError as exc:
            raise PricingConfigurationError(
                "Invalid pricing configuration",
                details={"errors": exc.errors(include_url=False, include_context=False, include_input=False)}
            )

    def match(self, city: Optional[str], neighborhood: Optional[str]) -> Optional[PricingZone]:
        """
        Find the zone for a stop's city/neighborhood.

        Flat-rate zones are consulted before distance-tiered ones; within a
        kind, configuration order decides.
        """
        city_text = normalize_place(city)
        neighborhood_text = normalize_place(neighborhood)
        if not city_text and not neighborhood_text:
            return None

        for kind in (ZoneKind.FLAT, ZoneKind.DISTANCE_TIERED):
            for zone in self.zones:
                if zone.kind == kind and zone.matches(city_text, neighborhood_text):
                    return zone
        return None


def default_pricing_table() -> ZonePricingTable:
    """Business defaults used to seed the first pricing rule version."""
    return ZonePricingTable(
        version=1,
        zones=[
            PricingZone(
                name="Satellite cities",
                kind=ZoneKind.FLAT,
                match_terms=["senador canedo", "canedo", "trindade", "goianira"],
                amount=Decimal("20.00"),
            ),
            PricingZone(
                name="Goiania metro",
                kind=ZoneKind.DISTANCE_TIERED,
                match_terms=["goiania", "aparecida"],
                tiers=[
                    DistanceTier(max_km=7, amount=Decimal("5.00")),
                    DistanceTier(max_km=999, amount=Decimal("10.00")),
                ],
            ),
        ],
        default_amount=Decimal("10.00"),
        failed_attempt_factor=Decimal("0.2"),
    )
