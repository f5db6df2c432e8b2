"""Handoff of finished work to the next pipeline stage."""

import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class HandoffPayload(BaseModel):
    source_stage: str
    source_job_id: str
    records_produced: int = Field(ge=0)
    parameters: Dict[str, Any] = Field(default_factory=dict)

    def next_parameters(self) -> Dict[str, Any]:
        return {
            **self.parameters,
            "triggered_by": f"handoff:{self.source_stage}",
            "source_job_id": self.source_job_id,
        }


class HandoffDispatcher:
    """Triggers the next stage, in-process when it is hosted here, over
    HTTP when its trigger URL is configured."""

    def __init__(
        self,
        registry=None,
        remote_urls: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._registry = registry
        self._remote_urls = dict(remote_urls or {})
        self._timeout = timeout
        self._transport = transport

    async def handoff(
        self,
        source_stage: str,
        target_stage: str,
        source_job_id: str,
        records_produced: int,
        parameters: Dict[str, Any],
    ) -> Dict[str, Any]:
        payload = HandoffPayload(
            source_stage=source_stage,
            source_job_id=source_job_id,
            records_produced=records_produced,
            parameters=parameters,
        )

        if self._registry is not None and self._registry.has(target_stage):
            job = await self._registry.submit(target_stage, payload.next_parameters())
            logger.info(
                "Handed off %s job %s to %s job %s",
                source_stage, source_job_id, target_stage, job.id,
            )
            return {"status": "triggered", "target": target_stage, "mode": "in_process", "job_id": job.id}

        url = self._remote_urls.get(target_stage)
        if url:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(url, json=payload.model_dump())
                response.raise_for_status()
                body = response.json()
            logger.info(
                "Handed off %s job %s to remote %s (job %s)",
                source_stage, source_job_id, target_stage, body.get("job_id"),
            )
            return {
                "status": "triggered",
                "target": target_stage,
                "mode": "http",
                "status_code": response.status_code,
                "job_id": body.get("job_id"),
            }

        logger.info("No destination for stage %s, handoff skipped", target_stage)
        return {"status": "skipped", "target": target_stage, "reason": "no destination configured"}
