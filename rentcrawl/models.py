"""Pydantic models shared across the crawl core."""
from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    """Naive UTC timestamp, as stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class QueueStatus(str, Enum):
    """Queue item lifecycle."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class DataCategory(str, Enum):
    """Field groups a scrape target may still be missing."""

    BASIC = "basic"
    DESCRIPTION = "description"
    CONTACT = "contact"
    IMAGES = "images"
    AMENITIES = "amenities"


ALL_CATEGORIES: Set[DataCategory] = set(DataCategory)
DETAIL_CATEGORIES: Set[DataCategory] = ALL_CATEGORIES - {DataCategory.BASIC}


class QueueItemKind(str, Enum):
    DISCOVERY = "discovery"
    DETAIL = "detail"


class PropertyType(str, Enum):
    WG_ROOM = "wg_room"
    STUDIO = "studio"
    APARTMENT = "apartment"
    HOUSE = "house"
    TEMPORARY = "temporary"
    COMMERCIAL = "commercial"
    OTHER = "other"


class ListingStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    DELETED = "deleted"
    EXPIRED = "expired"
    RENTED = "rented"


class QueueItemMetadata(BaseModel):
    """Extension map attached to a queue item.

    Known keys are validated; anything else an adapter adds is kept as-is.
    """

    model_config = ConfigDict(extra="allow")

    kind: QueueItemKind = QueueItemKind.DETAIL
    page: Optional[int] = Field(default=None, ge=1)
    external_id: Optional[str] = None
    title: Optional[str] = None


class QueueItem(BaseModel):
    """A scrape target, unique by (source, url)."""

    id: Optional[int] = None
    source: str = Field(..., min_length=1)
    url: str = Field(..., min_length=1)
    listing_id: Optional[int] = None
    priority: Optional[int] = None  # computed on enqueue when missing
    attempts: int = Field(default=0, ge=0)
    last_attempt_at: Optional[datetime] = None
    status: QueueStatus = QueueStatus.PENDING
    data_needed: Set[DataCategory] = Field(default_factory=lambda: set(ALL_CATEGORIES))
    metadata: QueueItemMetadata = Field(default_factory=QueueItemMetadata)
    error_message: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    processing_started_at: Optional[datetime] = None
    processing_ended_at: Optional[datetime] = None

    @property
    def key(self) -> tuple:
        return (self.source, self.url)

    @property
    def kind(self) -> QueueItemKind:
        return self.metadata.kind


class Coordinates(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class Location(BaseModel):
    district: Optional[str] = None
    address: Optional[str] = None
    zip_code: Optional[str] = None
    city: str = ""
    country: str = ""
    coordinates: Optional[Coordinates] = None


class Availability(BaseModel):
    available_from: Optional[date] = None
    available_to: Optional[date] = None
    immediately: bool = False
    flexible: bool = False


class Costs(BaseModel):
    base_rent: float = Field(default=0.0, ge=0)
    utilities: Optional[float] = Field(default=None, ge=0)
    total_rent: Optional[float] = Field(default=None, ge=0)
    deposit: Optional[float] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def fill_total(self) -> "Costs":
        """Derive the total from base rent and utilities when not given."""
        if self.total_rent is None:
            self.total_rent = self.base_rent + (self.utilities or 0.0)
        return self


class ContactInfo(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    company_name: Optional[str] = None
    is_agent: bool = False


class MediaAssets(BaseModel):
    images: List[str] = Field(default_factory=list)
    floor_plans: List[str] = Field(default_factory=list)
    virtual_tour: Optional[str] = None
    video: Optional[str] = None


class NormalizedListing(BaseModel):
    """Canonical cross-source listing, unique by (source, external_id)."""

    id: Optional[int] = None
    source: str = Field(..., min_length=1)
    external_id: str = Field(..., min_length=1)
    url: str = Field(..., min_length=1)

    title: str = ""
    description: Optional[str] = None
    property_type: Optional[PropertyType] = None
    status: ListingStatus = ListingStatus.ACTIVE
    size: Optional[float] = Field(default=None, gt=0)
    rooms: Optional[float] = Field(default=None, ge=0)
    floor: Optional[int] = None
    total_floors: Optional[int] = None
    year_built: Optional[int] = None

    location: Location = Field(default_factory=Location)
    availability: Availability = Field(default_factory=Availability)
    costs: Costs = Field(default_factory=Costs)
    contact: ContactInfo = Field(default_factory=ContactInfo)
    media: MediaAssets = Field(default_factory=MediaAssets)
    amenities: Dict[str, Optional[bool]] = Field(default_factory=dict)
    source_data: Dict[str, Any] = Field(default_factory=dict)

    first_seen_at: datetime = Field(default_factory=utcnow)
    scraped_at: datetime = Field(default_factory=utcnow)
    last_updated_at: datetime = Field(default_factory=utcnow)

    @property
    def key(self) -> tuple:
        return (self.source, self.external_id)

    @property
    def total_rent(self) -> float:
        return self.costs.total_rent or 0.0

    def missing_categories(self) -> Set[DataCategory]:
        """Return the data categories a re-scrape should fill in."""
        missing: Set[DataCategory] = set()
        if not self.description:
            missing.add(DataCategory.DESCRIPTION)
        if not (self.contact.name or self.contact.phone or self.contact.email):
            missing.add(DataCategory.CONTACT)
        if not self.media.images:
            missing.add(DataCategory.IMAGES)
        return missing


class UserPreferenceProfile(BaseModel):
    """Search preferences of one user, owned by the profile store."""

    user_id: str
    sources: List[str] = Field(default_factory=list)  # empty means every source

    districts: List[str] = Field(default_factory=list)
    max_distance_from_center: Optional[float] = Field(default=None, gt=0)
    city_center: Optional[Coordinates] = None

    min_rent: Optional[float] = Field(default=None, ge=0)
    max_rent: float = Field(default=2000.0, gt=0)
    min_size: Optional[float] = Field(default=None, gt=0)
    max_size: Optional[float] = Field(default=None, gt=0)
    min_rooms: Optional[float] = Field(default=None, ge=0)
    max_rooms: Optional[float] = Field(default=None, ge=0)
    property_types: List[PropertyType] = Field(default_factory=list)

    move_in_date: Optional[date] = None
    flexible_dates: bool = True
    required_amenities: Dict[str, bool] = Field(default_factory=dict)

    min_match_score: int = Field(default=60, ge=0, le=100)
    is_active: bool = True

    @field_validator("max_rent")
    @classmethod
    def max_above_min(cls, v, info):
        min_rent = info.data.get("min_rent")
        if min_rent is not None and v < min_rent:
            raise ValueError("max_rent must not be below min_rent")
        return v

    def wants_source(self, source: str) -> bool:
        return not self.sources or source in self.sources


class MatchResult(BaseModel):
    """Output of a single score computation."""

    score: int = Field(..., ge=0, le=100)
    matched: List[str] = Field(default_factory=list)
    missed: List[str] = Field(default_factory=list)


class MatchRecord(BaseModel):
    """Persisted match, unique by (user_id, listing_id)."""

    user_id: str
    listing_id: int
    source: str
    score: int = Field(..., ge=0, le=100)
    matched_criteria: List[str] = Field(default_factory=list)
    missed_criteria: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def key(self) -> tuple:
        return (self.user_id, self.listing_id)


class RawTarget(BaseModel):
    """Listing link found on a search-results page."""

    url: str
    external_id: Optional[str] = None
    title: Optional[str] = None


class RawDetail(BaseModel):
    """Fields an adapter pulled off a detail page, before normalisation."""

    model_config = ConfigDict(extra="allow")

    url: str
    external_id: Optional[str] = None
    title: Optional[str] = None
