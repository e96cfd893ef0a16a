"""API Models package for request/response schemas."""

from .responses import (
    BaseResponse,
    CronRunInfo,
    CronRunListResponse,
    CronStatusResponse,
    DeliveryInfo,
    DeliveryListResponse,
    ErrorResponse,
    HealthResponse,
    HealthStatus,
    ManualTriggerResponse,
    RetrySummaryModel,
    RunSummaryModel,
    SuccessResponse,
    TelegramIntegrationStatus,
)

__all__ = [
    "BaseResponse",
    "CronRunInfo",
    "CronRunListResponse",
    "CronStatusResponse",
    "DeliveryInfo",
    "DeliveryListResponse",
    "ErrorResponse",
    "HealthResponse",
    "HealthStatus",
    "ManualTriggerResponse",
    "RetrySummaryModel",
    "RunSummaryModel",
    "SuccessResponse",
    "TelegramIntegrationStatus",
]
