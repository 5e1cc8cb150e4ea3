from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from harvester.config import Category

OFFERING_TYPES: tuple[str, ...] = (
    "Cabernet Sauvignon",
    "Pinot Noir",
    "Merlot",
    "Zinfandel",
    "Syrah",
    "Cabernet Franc",
    "Petite Sirah",
    "Malbec",
    "Red Blend",
    "Chardonnay",
    "Sauvignon Blanc",
    "Viognier",
    "Riesling",
    "Pinot Grigio",
    "White Blend",
    "Rosé",
    "Brut",
    "Blanc de Blancs",
    "Sparkling Rosé",
    "Late Harvest",
)


class RunStatus(str, Enum):
    """Outcome of one pipeline attempt for one target."""

    SUCCESS = "success"
    """At least one record accepted and no errors."""

    PARTIAL = "partial"
    """At least one record accepted, but some page or category failed."""

    FAILED = "failed"
    """Nothing accepted, or the write failed."""


class MappingStatus(str, Enum):
    MAPPED = "mapped"
    NEEDS_REVIEW = "needs-manual-review"


class UrlMap(BaseModel):
    """Category sub-page URLs discovered on a venue website."""

    website_url: Optional[str] = None
    offerings_url: Optional[str] = None
    experiences_url: Optional[str] = None
    profile_url: Optional[str] = None
    status: MappingStatus = MappingStatus.NEEDS_REVIEW

    def url_for(self, category: Category) -> Optional[str]:
        return getattr(self, f"{category.value}_url")


class Target(BaseModel):
    """A winery to crawl."""

    name: str
    slug: str = Field(..., min_length=1)
    place_id: Optional[str] = Field(
        None, description="Reference into the external catalog the target came from"
    )
    website_url: Optional[str] = None
    lat: float
    lng: float
    address: Optional[str] = None
    city: Optional[str] = None
    valley: Optional[str] = None
    sub_region: Optional[str] = None
    phone: Optional[str] = None
    rating: Optional[float] = None
    review_count: int = 0
    rank: int = 0
    urls: Optional[UrlMap] = None


# ---------------------------------------------------------------------------
# Structured generation output
# ---------------------------------------------------------------------------


class ExtractedOffering(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    offering_type: str = Field(
        ...,
        description="Wine type; one of the fixed taxonomy values",
        json_schema_extra={"enum": list(OFFERING_TYPES)},
    )
    vintage: Optional[int] = Field(..., description="Vintage year, null for NV")
    price: Optional[float] = Field(..., description="Retail price in USD")
    description: Optional[str]


class OfferingList(BaseModel):
    model_config = ConfigDict(extra="forbid")

    offerings: list[ExtractedOffering]


class ExtractedExperience(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    description: Optional[str]
    price: Optional[float] = Field(..., description="Price per person in USD")
    duration_minutes: Optional[int]
    reservation_required: bool


class ExperienceList(BaseModel):
    model_config = ConfigDict(extra="forbid")

    experiences: list[ExtractedExperience]


class WeeklyHours(BaseModel):
    """Opening hours per weekday: a range like "10:00-17:00", "Closed", or null."""

    model_config = ConfigDict(extra="forbid")

    mon: Optional[str]
    tue: Optional[str]
    wed: Optional[str]
    thu: Optional[str]
    fri: Optional[str]
    sat: Optional[str]
    sun: Optional[str]


class ProfileInfo(BaseModel):
    model_config = ConfigDict(extra="forbid")

    description: Optional[str]
    short_description: Optional[str]
    hours: Optional[WeeklyHours]
    phone: Optional[str]
    email: Optional[str]
    reservation_required: bool
    dog_friendly: bool
    picnic_friendly: bool


def empty_profile() -> ProfileInfo:
    return ProfileInfo(
        description=None,
        short_description=None,
        hours=None,
        phone=None,
        email=None,
        reservation_required=False,
        dog_friendly=False,
        picnic_friendly=False,
    )


# ---------------------------------------------------------------------------
# Pipeline results
# ---------------------------------------------------------------------------


class ExtractionResult(BaseModel):
    slug: str
    offerings: list[ExtractedOffering] = Field(default_factory=list)
    experiences: list[ExtractedExperience] = Field(default_factory=list)
    profile: ProfileInfo = Field(default_factory=empty_profile)
    offerings_url: Optional[str] = None
    experiences_url: Optional[str] = None
    profile_url: Optional[str] = None
    image_urls: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class ValidationResult(BaseModel):
    warnings: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    offerings: list[ExtractedOffering] = Field(default_factory=list)
    experiences: list[ExtractedExperience] = Field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


class RunLog(BaseModel):
    """Append-only record of one pipeline attempt."""

    slug: str
    scraped_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    status: RunStatus
    offerings_found: int = 0
    experiences_found: int = 0
    content_hash: Optional[str] = None
    error_message: Optional[str] = None
