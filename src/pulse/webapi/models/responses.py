"""Response models for the Pulse API."""

from datetime import datetime
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_serializer
from pydantic.alias_generators import to_camel

from ...utils.clock import isoformat_z, utcnow

# Generic type for data responses
T = TypeVar("T")


class BaseResponse(BaseModel):
    """Base response model for all API responses."""

    success: bool = Field(..., description="Whether the request was successful")
    timestamp: datetime = Field(default_factory=utcnow, description="Response timestamp")
    request_id: Optional[str] = Field(
        None, description="Unique request identifier for tracking"
    )

    model_config = ConfigDict(
        use_enum_values=True,
        arbitrary_types_allowed=True,
    )

    @field_serializer("timestamp")
    def serialize_timestamp(self, dt: datetime) -> str:
        """Serialize datetime to ISO format with Z suffix."""
        return isoformat_z(dt)


class SuccessResponse(BaseResponse, Generic[T]):
    """Generic success response with typed data."""

    success: bool = Field(True, description="Always true for success responses")
    data: T = Field(..., description="Response data")
    message: Optional[str] = Field(None, description="Optional success message")


class ErrorResponse(BaseResponse):
    """Error response model."""

    success: bool = Field(False, description="Always false for error responses")
    error: Dict[str, Any] = Field(..., description="Error details")


class HealthStatus(BaseModel):
    """Health status model."""

    status: str = Field(
        ..., description="Overall health status: healthy, degraded, unhealthy"
    )
    services: Dict[str, Dict[str, Any]] = Field(
        default_factory=dict, description="Individual service statuses"
    )
    uptime_seconds: float = Field(..., description="Application uptime in seconds")
    version: Optional[str] = Field(None, description="Application version")


class HealthResponse(BaseResponse):
    """Health check response."""

    success: bool = Field(True, description="Always true for health responses")
    health: HealthStatus = Field(..., description="Detailed health information")


class CamelModel(BaseModel):
    """Model serialized with camelCase keys, as the dashboard expects."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class RunSummaryModel(CamelModel):
    """Outcome of one alert run."""

    message: str
    run_id: str
    processed_orgs: int
    triggered: int
    sent_email: int
    sent_telegram: int
    sent_webhook: int
    sent_slack: int = 0
    sent_teams: int = 0
    sent_in_app: int
    errors_count: int
    errors: List[str] = Field(default_factory=list, description="First errors of the run")


class RetrySummaryModel(CamelModel):
    """Outcome of one notification retry run."""

    message: str
    run_id: str
    processed: int
    requeued: int
    success_count: int
    fail_count: int
    errors_count: int
    errors: List[str] = Field(default_factory=list, description="First errors of the run")


class ManualTriggerResponse(BaseModel):
    """Response of the admin-initiated alert run."""

    success: bool = True
    message: str = "Alerts dispatch triggered successfully"
    result: RunSummaryModel


class CronRunInfo(CamelModel):
    """One CronRunLog entry as shown on the ops dashboard."""

    run_id: str
    job_name: str
    status: str
    ran_at: datetime
    finished_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    orgs_processed: int = 0
    alerts_triggered: int = 0
    sent_email: int = 0
    sent_telegram: int = 0
    sent_webhook: int = 0
    sent_slack: int = 0
    sent_teams: int = 0
    sent_in_app: int = 0
    error_count: int = 0
    error_sample: List[str] = Field(default_factory=list)
    last_error: Optional[str] = None

    @field_serializer("ran_at", "finished_at")
    def serialize_times(self, dt: Optional[datetime]) -> Optional[str]:
        return isoformat_z(dt) if dt else None

    @classmethod
    def from_run_log(cls, run_log) -> "CronRunInfo":
        """Build from a CronRunLog row."""
        return cls(
            run_id=run_log.run_id,
            job_name=run_log.job_name,
            status=run_log.status,
            ran_at=run_log.started_at,
            finished_at=run_log.finished_at,
            duration_ms=run_log.duration_ms,
            orgs_processed=run_log.orgs_processed or 0,
            alerts_triggered=run_log.alerts_triggered or 0,
            sent_email=run_log.sent_email or 0,
            sent_telegram=run_log.sent_telegram or 0,
            sent_webhook=run_log.sent_webhook or 0,
            sent_slack=run_log.sent_slack or 0,
            sent_teams=run_log.sent_teams or 0,
            sent_in_app=run_log.sent_in_app or 0,
            error_count=run_log.error_count or 0,
            error_sample=list(run_log.error_sample or []),
            last_error=run_log.last_error,
        )


class CronStatusResponse(CamelModel):
    """Last run of a scheduled job and when the next one should happen."""

    cron_name: str
    last_run: Optional[CronRunInfo] = None
    next_expected_run_hint: Optional[datetime] = None

    @field_serializer("next_expected_run_hint")
    def serialize_hint(self, dt: Optional[datetime]) -> Optional[str]:
        return isoformat_z(dt) if dt else None


class DeliveryInfo(CamelModel):
    """One notification delivery attempt."""

    id: int
    alert_event_id: Optional[int] = None
    channel: str
    recipient: Optional[str] = None
    status: str
    error: Optional[str] = None
    attempt: int = 1
    next_retry_at: Optional[datetime] = None
    retry_of_id: Optional[int] = None
    created_at: datetime
    sent_at: Optional[datetime] = None

    @field_serializer("created_at", "sent_at", "next_retry_at")
    def serialize_times(self, dt: Optional[datetime]) -> Optional[str]:
        return isoformat_z(dt) if dt else None


class CronRunListResponse(SuccessResponse[List[CronRunInfo]]):
    """Response model for the run ledger."""

    data: List[CronRunInfo] = Field(..., description="Most recent runs first")


class DeliveryListResponse(SuccessResponse[List[DeliveryInfo]]):
    """Response model for the delivery audit listing."""

    data: List[DeliveryInfo] = Field(..., description="Most recent deliveries first")


class TelegramIntegrationStatus(CamelModel):
    """Whether the organization's Telegram bot is set up and reachable."""

    configured: bool
    token_last4: Optional[str] = None
    chat_id: Optional[str] = None
    bot_username: Optional[str] = None
