"""Pydantic schemas for API request validation."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from core.connectors import AlertRuleKind, AuthType
from core.credentials import CredentialType
from core.routing import AggregationStrategy
from core.transformers import TransformerKind


# ---------------------------------------------------------------------------
# Integrations
# ---------------------------------------------------------------------------

class RateLimitIn(BaseModel):
    per_minute: Optional[int] = Field(None, ge=1)
    per_hour: Optional[int] = Field(None, ge=1)
    per_day: Optional[int] = Field(None, ge=1)


class RetryPolicyIn(BaseModel):
    max_attempts: int = Field(1, ge=1, le=10)
    base_delay_seconds: float = Field(1.0, gt=0)
    max_delay_seconds: float = Field(30.0, gt=0)
    backoff_multiplier: float = Field(2.0, ge=1)
    jitter: bool = True
    retry_on_status: list[int] = Field(default_factory=lambda: [429, 500, 502, 503, 504])


class CacheIn(BaseModel):
    ttl_seconds: float = Field(0.0, ge=0)
    max_entries: int = Field(1000, ge=1)


class IntegrationCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    base_url: str = Field(..., pattern=r"^https?://")
    category: str = "general"
    provider: str = ""
    auth_type: AuthType = AuthType.NONE
    credential_id: Optional[str] = None
    auth_config: dict[str, Any] = Field(default_factory=dict)
    rate_limit: RateLimitIn = Field(default_factory=RateLimitIn)
    retry: RetryPolicyIn = Field(default_factory=RetryPolicyIn)
    cache: CacheIn = Field(default_factory=CacheIn)
    health_path: Optional[str] = None
    enabled: bool = True


class IntegrationUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    base_url: Optional[str] = Field(None, pattern=r"^https?://")
    category: Optional[str] = None
    provider: Optional[str] = None
    auth_type: Optional[AuthType] = None
    credential_id: Optional[str] = None
    auth_config: Optional[dict[str, Any]] = None
    rate_limit: Optional[RateLimitIn] = None
    retry: Optional[RetryPolicyIn] = None
    cache: Optional[CacheIn] = None
    health_path: Optional[str] = None
    enabled: Optional[bool] = None


class AlertRuleCreate(BaseModel):
    kind: AlertRuleKind
    threshold: Any
    name: str = ""
    integration_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

class CredentialCreate(BaseModel):
    owner_id: str = Field(..., min_length=1)
    type: CredentialType
    owner_type: str = "integration"
    metadata: dict[str, Any] = Field(default_factory=dict)
    expires_at: Optional[datetime] = None
    secret: Optional[str] = Field(None, min_length=8, description="Import an existing secret instead of generating one")


class CredentialRotate(BaseModel):
    grace_seconds: float = Field(0, ge=0)


class CredentialRevoke(BaseModel):
    reason: str = ""


class CredentialVerify(BaseModel):
    secret: str


# ---------------------------------------------------------------------------
# Transformers
# ---------------------------------------------------------------------------

class TransformerCreate(BaseModel):
    id: str = Field(..., min_length=1, max_length=100, pattern=r"^[A-Za-z0-9_.-]+$")
    kind: TransformerKind
    config: dict[str, Any] = Field(default_factory=dict)
    description: str = ""
    input_schema: Optional[dict[str, Any]] = None
    output_schema: Optional[dict[str, Any]] = None


class TransformerTest(BaseModel):
    payload: Any = None
    context: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

class RouteStepIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    integration_id: str = Field(..., alias="integrationId")
    path: str = ""
    method: str = "GET"
    request_transformer: Optional[str] = Field(None, alias="requestTransformer")
    response_transformer: Optional[str] = Field(None, alias="responseTransformer")
    timeout_seconds: Optional[float] = Field(None, alias="timeoutSeconds")
    name: Optional[str] = None


class RouteCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    name: str = ""
    path: str = Field(..., min_length=1)
    method: str = "GET"
    steps: list[RouteStepIn] = Field(..., min_length=1)
    aggregation_strategy: AggregationStrategy = Field(AggregationStrategy.FIRST_SUCCESS, alias="aggregationStrategy")
    enabled: bool = True
    conditions: list[dict[str, Any]] = Field(default_factory=list)
    chain: bool = False
    timeout_seconds: Optional[float] = Field(None, alias="timeoutSeconds")


class RouteUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    expected_version: int = Field(..., alias="expectedVersion", ge=1)
    name: Optional[str] = None
    path: Optional[str] = None
    method: Optional[str] = None
    steps: Optional[list[RouteStepIn]] = None
    aggregation_strategy: Optional[AggregationStrategy] = Field(None, alias="aggregationStrategy")
    conditions: Optional[list[dict[str, Any]]] = None
    chain: Optional[bool] = None
    timeout_seconds: Optional[float] = Field(None, alias="timeoutSeconds")


class RouteTest(BaseModel):
    route: RouteCreate
    sample: Any = None
    params: dict[str, str] = Field(default_factory=dict)
    query: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Webhooks & events
# ---------------------------------------------------------------------------

class WebhookCreate(BaseModel):
    url: str = Field(..., pattern=r"^https?://")
    events: list[str] = Field(..., min_length=1)
    filters: dict[str, list[Any]] = Field(default_factory=dict)
    description: str = ""
    max_retries: Optional[int] = Field(None, ge=1, le=20)
    backoff_base_seconds: Optional[float] = Field(None, gt=0)
    timeout_seconds: Optional[float] = Field(None, gt=0)


class WebhookUpdate(BaseModel):
    url: Optional[str] = Field(None, pattern=r"^https?://")
    events: Optional[list[str]] = Field(None, min_length=1)
    filters: Optional[dict[str, list[Any]]] = None
    description: Optional[str] = None
    max_retries: Optional[int] = Field(None, ge=1, le=20)
    backoff_base_seconds: Optional[float] = Field(None, gt=0)
    timeout_seconds: Optional[float] = Field(None, gt=0)


class EventEmit(BaseModel):
    type: str = Field(..., min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    attributes: dict[str, Any] = Field(default_factory=dict)
    id: Optional[str] = None


class DeadLetterDiscard(BaseModel):
    reason: str = ""
