"""
Pydantic schemas for queue payloads and results.

Each lane has exactly one payload model and one result model; PAYLOAD_TYPES and
RESULT_TYPES are the tagged union keyed by QueueName.
"""
import math
import re
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, Field, field_validator


class QueueName(str, Enum):
    IMAGE_PROCESSING = "image-processing"
    AI_ANALYSIS = "ai-analysis"
    AUDIT_LOGGING = "audit-logging"


# ========== Payloads ==========
class ImageProcessingPayload(BaseModel):
    """Uploaded receipt/label photo to run OCR on"""
    image_url: str = Field(..., min_length=1, max_length=2048)
    inventory_id: str = Field(..., min_length=1, max_length=255)


class AiAnalysisPayload(BaseModel):
    action: Literal["GENERATE_INSIGHTS", "ANALYZE_WASTE"]
    query: Optional[str] = Field(None, max_length=4000)
    data: Dict[str, Any] = Field(default_factory=dict)


class AuditLoggingPayload(BaseModel):
    action: str = Field(..., min_length=1, max_length=100)
    details: Dict[str, Any] = Field(default_factory=dict)


# ========== Results ==========
class ExtractedItem(BaseModel):
    """One line item recognised on an image"""
    name: str = Field(..., min_length=1)
    quantity: float = 1
    unit: str = "pcs"
    confidence: Optional[float] = Field(None, ge=0, le=1)

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("quantity", mode="before")
    @classmethod
    def _coerce_quantity(cls, v):
        # Models answer "2", "2 kg", null or nonsense; counts are whole and at least 1
        if isinstance(v, str):
            match = re.match(r"\s*(\d+(?:\.\d+)?)", v)
            v = match.group(1) if match else None
        try:
            number = float(v)
        except (TypeError, ValueError):
            return 1
        if not math.isfinite(number):
            return 1
        return max(1, round(number))

    @field_validator("unit", mode="before")
    @classmethod
    def _default_unit(cls, v):
        if not isinstance(v, str) or not v.strip():
            return "pcs"
        return v.strip()

    @field_validator("confidence", mode="before")
    @classmethod
    def _coerce_confidence(cls, v):
        try:
            value = float(v)
        except (TypeError, ValueError):
            return None
        if 1 < value <= 100:
            # Percentages: 95 -> 0.95
            value = value / 100
        return value if 0 <= value <= 1 else None


class ImageProcessingResult(BaseModel):
    success: bool = True
    raw_text: str = ""
    data: List[ExtractedItem] = Field(default_factory=list)


class AiAnalysisResult(BaseModel):
    action: str
    insights: str


class AuditLoggingResult(BaseModel):
    audit_log_id: str


PAYLOAD_TYPES: Dict[QueueName, Type[BaseModel]] = {
    QueueName.IMAGE_PROCESSING: ImageProcessingPayload,
    QueueName.AI_ANALYSIS: AiAnalysisPayload,
    QueueName.AUDIT_LOGGING: AuditLoggingPayload,
}

RESULT_TYPES: Dict[QueueName, Type[BaseModel]] = {
    QueueName.IMAGE_PROCESSING: ImageProcessingResult,
    QueueName.AI_ANALYSIS: AiAnalysisResult,
    QueueName.AUDIT_LOGGING: AuditLoggingResult,
}

# Lanes whose completed result carries an item list under "data"
ITEM_EXTRACTION_QUEUES = frozenset({QueueName.IMAGE_PROCESSING})


def parse_queue_name(value: str) -> QueueName:
    """Resolve a lane name, raising UnknownQueue for anything else."""
    from pantry_jobs.errors import UnknownQueue

    try:
        return QueueName(value)
    except ValueError:
        raise UnknownQueue(value) from None


def validate_payload(queue_name: QueueName, raw: Dict[str, Any]) -> BaseModel:
    return PAYLOAD_TYPES[queue_name].model_validate(raw)


class EnqueueResponse(BaseModel):
    success: bool = True
    jobId: str


class JobStatusResponse(BaseModel):
    """Wire shape of GET /jobs/{queue}/{jobId}"""
    success: bool = True
    jobId: str
    queue: str
    status: Literal["waiting", "active", "completed", "failed"]
    inventoryId: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
