from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from event_atlas.domain.geocoding.providers import PROVIDER_TYPES


class CacheEntryRequest(BaseModel):
    cache: str
    key: str
    value: Any
    ttl_seconds: Optional[int] = Field(default=None, ge=1)


class CacheEntryResponse(BaseModel):
    success: bool
    cache: str
    key: str
    entry: Optional[Dict[str, Any]] = None


class CacheKeysResponse(BaseModel):
    success: bool
    cache: str
    keys: List[Any]
    total: int
    limit: int
    offset: int


class CacheCleanupResponse(BaseModel):
    success: bool
    removed: int
    per_cache: Dict[str, int]


class RunJobsRequest(BaseModel):
    limit: int = Field(default=5, ge=1, le=100)
    iterations: int = Field(default=1, ge=1, le=50)


class RunJobsResponse(BaseModel):
    """Counts per collection before and after running the worker in-process."""
    success: bool
    iterations: int
    before: Dict[str, Any]
    after: Dict[str, Any]
    runs: List[Dict[str, Any]] = Field(default_factory=list)


class GeocodeTestRequest(BaseModel):
    address: str


class GeocodeTestResponse(BaseModel):
    success: bool
    address: str
    normalized_address: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    provider: Optional[str] = None


class GeocodingProviderCreateRequest(BaseModel):
    name: str
    type: str
    enabled: bool = True
    priority: Optional[int] = None
    tags: List[str] = Field(default_factory=list)
    config: Dict[str, Any] = Field(default_factory=dict)
    timeout_seconds: Optional[float] = Field(default=None, gt=0)

    @field_validator("type")
    def validate_type(cls, value: str) -> str:
        if value not in PROVIDER_TYPES:
            raise ValueError(f"type must be one of {sorted(PROVIDER_TYPES)}")
        return value


class GeocodingProviderInfo(BaseModel):
    id: str
    name: str
    type: str
    enabled: bool
    priority: int
    tags: List[str] = Field(default_factory=list)
    timeout_seconds: Optional[float] = None
    created_at: Optional[datetime] = None


class GeocodingProviderListResponse(BaseModel):
    success: bool
    providers: List[GeocodingProviderInfo]


class QuotaSummaryResponse(BaseModel):
    success: bool
    user_id: int
    trust_level: int
    is_admin: bool
    limits: Dict[str, int]
    usage: Dict[str, int]
    checks: Dict[str, Dict[str, Any]]
