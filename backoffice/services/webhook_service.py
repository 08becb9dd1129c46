import logging

import httpx

from backoffice.config import settings
from backoffice.models.approval import ApprovalRequest

logger = logging.getLogger(__name__)

RESOLVED_EVENT = "approvals.resolved"


def _webhook_urls() -> list[str]:
    if not settings.WEBHOOK_URLS:
        return []
    return [u.strip() for u in settings.WEBHOOK_URLS.split(",") if u.strip()]


def build_resolution_payload(req: ApprovalRequest) -> dict:
    return {
        "event": RESOLVED_EVENT,
        "tenant_id": req.tenant_id,
        "request_id": req.id,
        "object_type": req.object_type.value,
        "object_id": req.object_id,
        "status": req.status.value,
        "current_level": req.current_level,
        "total_levels": req.total_levels,
        "resolved_at": req.resolved_at.isoformat() if req.resolved_at else None,
        "decisions": req.decisions,
        "cancel_reason": req.cancel_reason or None,
    }


async def send_webhook(payload: dict) -> list[dict]:
    """Send an event to all configured webhook URLs."""
    urls = _webhook_urls()
    if not urls:
        return []

    results = []
    async with httpx.AsyncClient(timeout=settings.WEBHOOK_TIMEOUT_SECONDS) as client:
        for url in urls:
            try:
                resp = await client.post(url, json=payload)
                results.append({"url": url, "status": resp.status_code, "success": resp.is_success})
            except httpx.HTTPError as e:
                logger.error("Webhook %s failed for %s: %s", payload.get("event"), url, e)
                results.append({"url": url, "status": 0, "success": False, "error": str(e)})

    return results

