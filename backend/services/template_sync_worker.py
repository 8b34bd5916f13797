"""
WhatsApp Template Sync Worker - pulls approved templates from the Graph API

Walks the paginated `/{waba_id}/message_templates` listing, turns each item into
a clinic template record and inserts the ones that do not exist yet.

No checkpoint is kept: an interrupted sync starts again at page 1 and the
existence check on (clinic_id, unique_name, language) prevents duplicates.
"""

import logging
import traceback
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
from pydantic import ValidationError
from pymongo.errors import PyMongoError

from config import GRAPH_API_BASE, GRAPH_API_TIMEOUT
from models.schemas import JobOutcome, TemplateSyncPayload, TemplateSyncSummary

logger = logging.getLogger('template_sync_worker')

QUEUE_NAME = "sync-whatsapp-templates"


def _component(components: List[Dict[str, Any]], kind: str) -> Optional[Dict[str, Any]]:
    for component in components:
        if str(component.get("type", "")).upper() == kind:
            return component
    return None


def template_from_graph(item: Dict[str, Any], clinic_id: str) -> Dict[str, Any]:
    """Map one Graph API message template onto the templates collection shape"""
    components = item.get("components") or []
    body = _component(components, "BODY") or {}
    header = _component(components, "HEADER")
    footer = _component(components, "FOOTER")
    buttons = _component(components, "BUTTONS")

    return {
        "clinic_id": clinic_id,
        "template_type": "whatsapp",
        "name": item.get("name"),
        "unique_name": item.get("name"),
        "whatsapp_template_id": item.get("id"),
        "category": str(item.get("category") or "").lower(),
        "language": item.get("language"),
        "status": str(item.get("status") or "").lower(),
        "content": body.get("text", ""),
        "header": {
            "format": str(header.get("format") or "").lower(),
            "text": header.get("text")
        } if header else None,
        "footer": footer.get("text") if footer else None,
        "buttons": buttons.get("buttons", []) if buttons else [],
        "created_at": datetime.now(timezone.utc)
    }


class TemplateSyncWorker:
    def __init__(self, db, http_client: Optional[httpx.AsyncClient] = None, base_url: str = GRAPH_API_BASE):
        self.templates = db.templates
        self.http_client = http_client
        self.base_url = base_url.rstrip("/")

    async def fetch_pages(self, client: httpx.AsyncClient, payload: TemplateSyncPayload) -> AsyncIterator[List[Dict]]:
        url = f"{self.base_url}/{payload.waba_id}/message_templates"
        params = {"limit": payload.page_size}
        headers = {"Authorization": f"Bearer {payload.access_token}"}
        seen = set()

        while url and url not in seen:
            seen.add(url)
            response = await client.get(url, params=params, headers=headers)
            response.raise_for_status()
            data = response.json()

            yield data.get("data") or []

            url = (data.get("paging") or {}).get("next")
            params = None  # the next link carries its own query string

    async def template_exists(self, template: Dict[str, Any]) -> bool:
        existing = await self.templates.find_one(
            {
                "clinic_id": template["clinic_id"],
                "unique_name": template["unique_name"],
                "language": template["language"]
            },
            {"_id": 1}
        )
        return existing is not None

    async def sync(self, payload: TemplateSyncPayload) -> TemplateSyncSummary:
        if self.http_client is not None:
            return await self._sync(self.http_client, payload)
        async with httpx.AsyncClient(timeout=GRAPH_API_TIMEOUT) as client:
            return await self._sync(client, payload)

    async def _sync(self, client: httpx.AsyncClient, payload: TemplateSyncPayload) -> TemplateSyncSummary:
        summary = TemplateSyncSummary()

        async for items in self.fetch_pages(client, payload):
            summary.pages += 1
            summary.fetched += len(items)

            for item in items:
                if not item.get("name"):
                    summary.skipped += 1
                    continue
                template = template_from_graph(item, payload.clinic_id)
                try:
                    if await self.template_exists(template):
                        summary.skipped += 1
                        continue
                    await self.templates.insert_one(template)
                except PyMongoError as e:
                    summary.failed += 1
                    logger.warning(f"Clinic {payload.clinic_id}: template {template['unique_name']} not stored: {e}")
                    continue
                summary.inserted += 1

            logger.info(f"Clinic {payload.clinic_id}: page {summary.pages}, {summary.inserted} templates inserted so far")

        return summary

    async def run(self, job_id: str, payload: TemplateSyncPayload) -> JobOutcome:
        """Sync all pages. Never raises."""
        try:
            summary = await self.sync(payload)
        except httpx.HTTPError as e:
            logger.error(f"Job {job_id}: Graph API request failed: {e}")
            return JobOutcome.failure(f"{type(e).__name__}: {e}")
        except Exception as e:
            error_msg = f"{type(e).__name__}: {str(e)}"
            logger.error(f"Job {job_id} failed: {error_msg}")
            logger.error(traceback.format_exc())
            return JobOutcome.failure(error_msg)

        logger.info(
            f"Job {job_id} completed: {summary.inserted} inserted, {summary.skipped} skipped, "
            f"{summary.failed} failed"
        )
        return JobOutcome.success(summary)


async def process_job(db, queue, job: dict) -> JobOutcome:
    """Run one claimed template sync job and settle it on the queue."""
    job_id = job["job_id"]
    logger.info(f"Starting template sync {job_id}")

    try:
        payload = TemplateSyncPayload.model_validate(job.get("payload") or {})
    except ValidationError as e:
        outcome = JobOutcome.failure(f"Invalid payload: {e}")
        await queue.settle(job_id, outcome, retry=False)
        return outcome

    outcome = await TemplateSyncWorker(db).run(job_id, payload)
    await queue.settle(job_id, outcome)
    return outcome
