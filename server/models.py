"""
Pydantic Models for ReWear Exchange API

This module contains all the data models used throughout the application.
Stored documents use camelCase field names; models accept either the alias
or the Python attribute name.
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


# Bounds of any item's point value; the rewards config can only narrow them
POINT_VALUE_MIN = 10
POINT_VALUE_MAX = 200


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


class ItemCategory(str, Enum):
    MEN = "Men"
    WOMEN = "Women"
    UNISEX = "Unisex"
    KIDS = "Kids"


class ItemCondition(str, Enum):
    EXCELLENT = "Excellent"
    GOOD = "Good"
    FAIR = "Fair"


class ItemStatus(str, Enum):
    AVAILABLE = "available"
    PENDING = "pending"
    SWAPPED = "swapped"
    REDEEMED = "redeemed"


class SwapType(str, Enum):
    SWAP = "swap"
    POINTS = "points"


class SwapStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    COMPLETED = "completed"
    DECLINED = "declined"


class StoredModel(BaseModel):
    """Base for documents persisted in the ledger store"""
    model_config = ConfigDict(populate_by_name=True)

    def to_document(self) -> dict:
        """Serialize with storage field names"""
        data = self.model_dump(by_alias=True, exclude={"id", "uid"})
        return {key: value.value if isinstance(value, Enum) else value for key, value in data.items()}

    def to_response(self) -> dict:
        """Serialize for API responses"""
        return self.model_dump(by_alias=True, mode="json")


class User(StoredModel):
    """Community member with a points balance"""
    uid: str
    name: str = "User"
    email: str = ""
    role: UserRole = UserRole.USER
    points: int = Field(default=0, ge=0)
    avatar_url: Optional[str] = Field(None, alias="avatarUrl")
    created_at: datetime = Field(default_factory=_utcnow, alias="createdAt")

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class ClothingItem(StoredModel):
    """Garment listed for exchange"""
    id: str
    title: str = Field(..., min_length=1)
    description: str = ""
    images: List[str] = Field(default_factory=list)
    category: ItemCategory
    size: str = ""
    condition: ItemCondition
    tags: List[str] = Field(default_factory=list)
    status: ItemStatus = ItemStatus.AVAILABLE
    uploader_id: str = Field(..., alias="uploaderId")
    uploader_name: str = Field("Unknown", alias="uploaderName")
    point_value: int = Field(..., ge=POINT_VALUE_MIN, le=POINT_VALUE_MAX, alias="pointValue")
    created_at: datetime = Field(default_factory=_utcnow, alias="createdAt")


class SwapRequest(StoredModel):
    """Swap proposal or completed points redemption (audit trail entry)"""
    id: str
    item_id: str = Field(..., alias="itemId")
    requester_id: str = Field(..., alias="requesterId")
    uploader_id: str = Field(..., alias="uploaderId")
    requester_item_id: Optional[str] = Field(None, alias="requesterItemId")
    type: SwapType
    status: SwapStatus = SwapStatus.PENDING
    message: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow, alias="createdAt")


class ItemSubmission(BaseModel):
    """Listing form submitted by an uploader"""
    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(..., min_length=1, max_length=120)
    description: str = Field("", max_length=2000)
    images: List[str] = Field(default_factory=list)
    category: ItemCategory
    size: str = Field(..., min_length=1, max_length=10)
    condition: ItemCondition
    tags: List[str] = Field(default_factory=list)
    point_value: int = Field(..., gt=0, alias="pointValue")

    @field_validator('tags')
    @classmethod
    def normalize_tags(cls, v):
        return [tag.strip() for tag in v if tag and tag.strip()]

    @field_validator('images')
    @classmethod
    def validate_images_not_empty(cls, v):
        images = [url for url in v if url and url.strip()]
        if not images:
            raise ValueError('At least one image is required')
        return images


class ItemUpdate(BaseModel):
    """Editable item fields (status is never editable here)"""
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    title: Optional[str] = Field(None, min_length=1, max_length=120)
    description: Optional[str] = Field(None, max_length=2000)
    images: Optional[List[str]] = None
    size: Optional[str] = Field(None, min_length=1, max_length=10)
    tags: Optional[List[str]] = None
    point_value: Optional[int] = Field(None, gt=0, alias="pointValue")

    @field_validator('title', 'description', 'images', 'size', 'tags', 'point_value')
    @classmethod
    def reject_null(cls, v):
        if v is None:
            raise ValueError('Field cannot be null; omit it to leave it unchanged')
        return v


class SwapProposal(BaseModel):
    """Body of a swap request"""
    model_config = ConfigDict(populate_by_name=True)

    item_id: str = Field(..., min_length=1, alias="itemId")
    requester_item_id: Optional[str] = Field(None, alias="requesterItemId")
    message: Optional[str] = Field(None, max_length=1000)


class ImagePrompt(BaseModel):
    prompt: str = Field(..., min_length=1, max_length=500)


class RewardsConfig(BaseModel):
    """Model for rewards system configuration"""
    model_config = ConfigDict(populate_by_name=True)

    welcome_bonus: int = Field(100, ge=0, alias="welcomeBonus")
    listing_bonus: int = Field(0, ge=0, le=1000, alias="listingBonus")
    min_point_value: int = Field(POINT_VALUE_MIN, ge=POINT_VALUE_MIN, le=POINT_VALUE_MAX, alias="minPointValue")
    max_point_value: int = Field(POINT_VALUE_MAX, ge=POINT_VALUE_MIN, le=POINT_VALUE_MAX, alias="maxPointValue")

    @field_validator('max_point_value')
    @classmethod
    def validate_range(cls, v, info):
        minimum = info.data.get('min_point_value')
        if minimum is not None and v < minimum:
            raise ValueError('maxPointValue must not be below minPointValue')
        return v


class RedemptionResult(BaseModel):
    """Outcome of a points redemption"""
    request: SwapRequest
    item: ClothingItem
    remaining_points: int
    replayed: bool = False


class SwapResult(BaseModel):
    """Outcome of an accepted swap"""
    request: SwapRequest
    items: List[ClothingItem]
    declined_request_ids: List[str] = Field(default_factory=list)
