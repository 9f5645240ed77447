"""
Pydantic response models for API endpoints.

Field names are the camelCase keys the dashboard UI consumes.
"""
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


# ═══════════════════════════════════════════════════════════════════════════════
# HEALTH CHECK
# ═══════════════════════════════════════════════════════════════════════════════

class HealthResponse(BaseModel):
    """Health check response."""
    status: str = Field(description="Service status: healthy or degraded")
    version: str = Field(description="Application version")
    uptime_seconds: int = Field(description="Uptime in seconds")
    correlation_id: Optional[str] = Field(None, description="Request correlation ID")
    klaviyo_configured: bool = Field(description="Whether an API key is configured")
    metrics: Dict[str, Any] = Field(default_factory=dict, description="In-process request metrics")


# ═══════════════════════════════════════════════════════════════════════════════
# REPORT SUMMARY
# ═══════════════════════════════════════════════════════════════════════════════

class CampaignRow(BaseModel):
    """One campaign of the report."""
    id: str
    name: str
    status: str
    sendDate: Optional[str] = Field(None, description="send_time, else scheduled_at, else created_at")
    messageType: str = Field(description="Channel of the campaign's messages")
    recipients: int
    opens: int
    clicks: int
    revenue: float
    conversions: int
    openRate: float = Field(ge=0, le=100)
    clickRate: float = Field(ge=0, le=100)
    engagementRevenue: float = 0.0
    revenuePercentage: str = "0.0"


class FlowRow(BaseModel):
    """One flow of the report."""
    id: str
    name: str
    status: str
    updatedAt: Optional[str] = None
    recipients: int
    opens: int
    clicks: int
    revenue: float
    conversions: int
    openRate: float = Field(ge=0, le=100)
    clickRate: float = Field(ge=0, le=100)
    engagementRevenue: float = 0.0
    revenuePercentage: str = "0.0"


class AttributionCoverageResponse(BaseModel):
    """How much of the conversion stream was attributed."""
    conversionEvents: int
    conversionRevenue: float
    campaignEvents: int
    flowEvents: int
    ambiguousEvents: int
    unattributedEvents: int
    unattributedRevenue: float


class ReportWindowResponse(BaseModel):
    start: str
    end: str


class SummaryResponse(BaseModel):
    """Campaign & flow performance over the reporting window."""
    success: bool = True
    totalRevenue: float
    totalRevenueSource: str = Field(description="aggregate, events, or none")
    totalCampaigns: int
    totalFlows: int
    campaignRevenue: float
    flowRevenue: float
    attributedCampaignRevenue: Dict[str, float]
    attributedFlowRevenue: Dict[str, float]
    campaigns: List[CampaignRow]
    flows: List[FlowRow]
    attribution: Optional[AttributionCoverageResponse] = None
    engagementRevenueMode: str
    warnings: List[str] = Field(default_factory=list)
    timeframe: str
    window: Optional[ReportWindowResponse] = None
    durationMs: Optional[float] = None


class ReportErrorResponse(BaseModel):
    """Report-level error envelope."""
    success: bool = False
    error: Any = Field(description="Upstream error payload, unmodified")
    stage: str = Field(description="Pipeline stage that failed")
    correlation_id: Optional[str] = None


# ═══════════════════════════════════════════════════════════════════════════════
# READ-ONLY VIEWS
# ═══════════════════════════════════════════════════════════════════════════════

class MetricResponse(BaseModel):
    id: str
    name: str
    integration: Optional[str] = None


class MetricsListResponse(BaseModel):
    metrics: List[MetricResponse]
    count: int


class ConversionEventResponse(BaseModel):
    id: str
    datetime: Optional[str] = None
    revenue: float
    ownerId: Optional[str] = None


class ConversionOwnerSummary(BaseModel):
    conversions: int
    revenue: float


class ConversionsResponse(BaseModel):
    """Conversion events with their resolved campaign or flow."""
    entity: str
    events: List[ConversionEventResponse]
    owners: Dict[str, ConversionOwnerSummary]
    warnings: List[str] = Field(default_factory=list)


class CampaignValuesResponse(BaseModel):
    """Upstream campaign values report, passed through."""
    campaignId: str
    results: List[Dict[str, Any]] = Field(default_factory=list)
    totals: Dict[str, float] = Field(default_factory=dict, description="Statistics summed over result rows")
    waitedSeconds: float = Field(0.0, description="Time this request queued for the report quota")


class FlowValuesResponse(BaseModel):
    """Upstream flow values report; one result row per flow message."""
    flowId: str
    results: List[Dict[str, Any]] = Field(default_factory=list)
    totals: Dict[str, float] = Field(default_factory=dict, description="Statistics summed over the flow's messages")
    waitedSeconds: float = 0.0


class OwnerAttributionResponse(BaseModel):
    """Locally attributed conversions of one campaign or flow."""
    entity: str
    id: str
    conversions: int
    revenue: float
    events: List[ConversionEventResponse]
    warnings: List[str] = Field(default_factory=list)
