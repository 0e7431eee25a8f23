import json

from sqlalchemy.ext.asyncio import AsyncSession

from pantry_jobs.errors import InvalidResponse
from pantry_jobs.models.queue_job import QueueJob
from pantry_jobs.schemas.jobs import AiAnalysisPayload, AiAnalysisResult
from pantry_jobs.services.audit import record_audit
from pantry_jobs.services.inference import get_inference_client


def build_prompt(payload: AiAnalysisPayload) -> str:
    if payload.action == "ANALYZE_WASTE":
        return f"Analyze food waste for this household and suggest reductions: {json.dumps(payload.data, default=str)}"
    query = payload.query or "Summarise my pantry and suggest what to cook first."
    if payload.data:
        return f"{query}\n\nContext: {json.dumps(payload.data, default=str)}"
    return query


async def handle_ai_job(db: AsyncSession, job: QueueJob, payload: AiAnalysisPayload) -> AiAnalysisResult:
    """Generate pantry insights or a waste analysis with the chat model."""
    response = await get_inference_client().chat_complete(build_prompt(payload))
    insights = response.get("content") or ""
    if not insights.strip():
        raise InvalidResponse(f"No insights returned for {payload.action}")

    await record_audit(db, job.owner_id, f"AI_{payload.action}_COMPLETED", {"jobId": job.id})
    return AiAnalysisResult(action=payload.action, insights=insights)
