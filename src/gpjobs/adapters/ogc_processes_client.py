# gpjobs/adapters/ogc_processes_client.py
"""RemoteJobClientPort adapter for OGC API - Processes servers.

    POST   /processes/{processId}/execution   Prefer: respond-async | respond-sync
    GET    /jobs/{jobId}                      statusInfo
    GET    /jobs/{jobId}/results              outputs
    DELETE /jobs/{jobId}                      dismiss
"""

import logging
import uuid
from typing import Any, Dict, Optional
from urllib.parse import urljoin

import aiohttp

from gpjobs.adapters.aiohttp_transport import (
    AioHttpTransport,
    HttpReply,
    describe_error,
    raise_for_poll_status,
    raise_for_result_status,
)
from gpjobs.core.exceptions import CommunicationError, ServiceError, SubmissionError
from gpjobs.core.interfaces.remote_job_client import RemoteJobClientPort
from gpjobs.core.models.job import (
    ExecutionMode,
    Extent,
    JobHandle,
    JobParameters,
    JobStatus,
    ResultPayload,
    StatusSnapshot,
)

logger = logging.getLogger(__name__)

REQUIRED_STATUS_FIELDS = {"jobID", "status"}

OGC_STATUS_MAP: Dict[str, JobStatus] = {
    "accepted": JobStatus.started,
    "running": JobStatus.started,
    "successful": JobStatus.succeeded,
    "failed": JobStatus.failed,
    "dismissed": JobStatus.canceled,
}


def find_bbox_extent(outputs: Any) -> Optional[Extent]:
    """First `bbox` found in the outputs document, as an Extent."""
    if isinstance(outputs, dict):
        bbox = outputs.get("bbox")
        if isinstance(bbox, (list, tuple)) and len(bbox) == 4:
            try:
                return Extent(xmin=bbox[0], ymin=bbox[1], xmax=bbox[2], ymax=bbox[3])
            except (TypeError, ValueError):
                return None
        for value in outputs.values():
            extent = find_bbox_extent(value)
            if extent:
                return extent
    return None


class OgcProcessesClient(AioHttpTransport, RemoteJobClientPort):
    def __init__(
        self,
        base_url: str,
        process_id: str,
        api_token: Optional[str] = None,
        timeout_total: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        super().__init__(timeout_total=timeout_total, session=session)
        self.base_url = str(base_url).rstrip("/")
        self.process_id = process_id
        self._api_token = api_token

    def _headers(self, **extra: str) -> Dict[str, str]:
        headers = {"Accept": "application/json", **extra}
        if self._api_token:
            headers["Authorization"] = f"Bearer {self._api_token}"
        return headers

    def _resolve_location(self, location: str) -> str:
        """Resolve relative Location header to absolute URL."""
        if location.startswith("http://") or location.startswith("https://"):
            return location
        return urljoin(self.base_url + "/", location)

    def job_url(self, job_id: str) -> str:
        return f"{self.base_url}/jobs/{job_id}"

    # ----------------- RemoteJobClientPort -----------------
    async def submit(self, parameters: JobParameters) -> JobHandle:
        synchronous = parameters.execution_mode == ExecutionMode.synchronous
        exec_url = f"{self.base_url}/processes/{self.process_id}/execution"
        prefer = "respond-sync" if synchronous else "respond-async"
        payload = {"inputs": parameters.to_wire_inputs()}
        logger.debug(f"[ogc:submit] POST exec_url={exec_url} prefer={prefer}")

        try:
            reply = await self.request(
                "POST", exec_url, json_body=payload, headers=self._headers(Prefer=prefer)
            )
        except CommunicationError as exc:
            raise SubmissionError("The processing service is unreachable", diagnostic=exc.diagnostic) from exc

        if not reply.ok:
            raise SubmissionError(
                describe_error(reply), upstream_status=reply.status, diagnostic=f"url={exec_url}"
            )

        body = reply.body if isinstance(reply.body, dict) else {}
        location = reply.headers.get("Location") or reply.headers.get("location")

        if REQUIRED_STATUS_FIELDS.issubset(body.keys()) or location:
            job_id = body.get("jobID") or location.rstrip("/").rsplit("/", 1)[-1]
            status_url = self._resolve_location(location) if location else self.job_url(job_id)
            logger.debug(f"[ogc:submit] job_id={job_id} status_url={status_url}")
            return JobHandle(
                job_id=job_id,
                status_url=status_url,
                results_url=f"{self.job_url(job_id)}/results",
            )

        if reply.body is not None:
            # Server executed synchronously and answered with the outputs
            return JobHandle(
                job_id=f"sync-{uuid.uuid4().hex}",
                immediate_result=ResultPayload(
                    layer_url=exec_url,
                    extent=find_bbox_extent(body),
                    outputs=body if body else {"value": reply.body},
                ),
            )

        raise SubmissionError(
            "The processing service returned neither a job nor results",
            upstream_status=reply.status,
        )

    async def fetch_status(self, handle: JobHandle) -> StatusSnapshot:
        if handle.immediate_result is not None:
            return StatusSnapshot(status=JobStatus.succeeded, latest_message="Completed")
        url = handle.status_url or self.job_url(handle.job_id)
        reply = await self.request("GET", url, headers=self._headers())
        raise_for_poll_status(reply, url)
        body = reply.json_body(url)
        if not REQUIRED_STATUS_FIELDS.issubset(body.keys()):
            raise CommunicationError("Response is not a statusInfo document", diagnostic=str(body)[:200])

        status = OGC_STATUS_MAP.get(str(body["status"]))
        if status is None:
            raise ServiceError(f"Unknown job status '{body['status']}'", diagnostic=f"url={url}")
        message = body.get("message")
        progress = body.get("progress")
        if not isinstance(progress, int) or not 0 <= progress <= 100:
            progress = None
        return StatusSnapshot(
            status=status,
            latest_message=message,
            error=(message or "Remote job failed") if status == JobStatus.failed else None,
            progress=progress,
        )

    async def fetch_result(self, handle: JobHandle) -> ResultPayload:
        if handle.immediate_result is not None:
            return handle.immediate_result
        url = handle.results_url or f"{self.job_url(handle.job_id)}/results"
        reply = await self.request("GET", url, headers=self._headers())
        raise_for_result_status(reply, url)
        outputs = reply.json_body(url)
        return ResultPayload(layer_url=url, extent=find_bbox_extent(outputs), outputs=outputs)

    async def cancel(self, handle: JobHandle) -> None:
        if handle.immediate_result is not None:
            return
        url = self.job_url(handle.job_id)
        reply: HttpReply = await self.request("DELETE", url, headers=self._headers())
        raise_for_poll_status(reply, url)
        logger.debug(f"[ogc:cancel] dismissed job_id={handle.job_id} status={reply.status}")
