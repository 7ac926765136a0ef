# gpjobs/adapters/arcgis_gp_client.py
"""RemoteJobClientPort adapter for ArcGIS Server geoprocessing tasks.

REST surface used (relative to the GP task / service URLs):

    POST {task}/submitJob                       asynchronous submit -> {"jobId", "jobStatus"}
    POST {task}/execute                         synchronous execute -> {"results": [...]}
    GET  {service}/jobs/{jobId}                 job status and messages
    GET  {service}/jobs/{jobId}/results/{name}  output parameter value
    GET  {map service}/jobs/{jobId}             result map service (full extent)
    POST {service}/jobs/{jobId}/cancel          cancel request

ArcGIS answers most errors with HTTP 200 and an {"error": {...}} body; those
are mapped by the error code they carry.
"""

import json
import logging
import uuid
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

import aiohttp

from gpjobs.adapters.aiohttp_transport import (
    TRANSIENT_HTTP_STATUSES,
    AioHttpTransport,
    HttpReply,
    describe_error,
    raise_for_poll_status,
    raise_for_result_status,
)
from gpjobs.core.exceptions import (
    CommunicationError,
    ResultUnavailableError,
    ServiceError,
    SubmissionError,
)
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

ESRI_STATUS_MAP: Dict[str, JobStatus] = {
    "esriJobNew": JobStatus.started,
    "esriJobSubmitted": JobStatus.started,
    "esriJobWaiting": JobStatus.paused,
    "esriJobExecuting": JobStatus.started,
    "esriJobCancelling": JobStatus.started,
    "esriJobSucceeded": JobStatus.succeeded,
    "esriJobFailed": JobStatus.failed,
    "esriJobTimedOut": JobStatus.failed,
    "esriJobCancelled": JobStatus.canceled,
    "esriJobDeleted": JobStatus.canceled,
}

ERROR_MESSAGE_TYPE = "esriJobMessageTypeError"


def encode_gp_value(value: Any) -> str:
    """Encode one input value as an ArcGIS REST form field."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        moment = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return str(int(moment.timestamp() * 1000))
    if isinstance(value, date):
        moment = datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
        return str(int(moment.timestamp() * 1000))
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def parse_extent(raw: Any) -> Optional[Extent]:
    if not isinstance(raw, dict):
        return None
    try:
        spatial_reference = raw.get("spatialReference") or {}
        return Extent(
            xmin=raw["xmin"],
            ymin=raw["ymin"],
            xmax=raw["xmax"],
            ymax=raw["ymax"],
            wkid=spatial_reference.get("latestWkid") or spatial_reference.get("wkid"),
        )
    except (KeyError, TypeError, ValueError):
        return None


def _error_code(body: Dict[str, Any]) -> Optional[int]:
    error = body.get("error")
    if not isinstance(error, dict):
        return None
    try:
        return int(error.get("code", 500))
    except (TypeError, ValueError):
        return 500


class ArcGisGpClient(AioHttpTransport, RemoteJobClientPort):
    def __init__(
        self,
        task_url: str,
        result_parameter: str = "Output_Features",
        api_token: Optional[str] = None,
        timeout_total: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        super().__init__(timeout_total=timeout_total, session=session)
        self.task_url = str(task_url).rstrip("/")
        # GP service root: everything before the task name
        self.service_url = self.task_url.rsplit("/", 1)[0]
        self.result_parameter = result_parameter
        self._api_token = api_token

    # ----------------- URL helpers -----------------
    def _params(self, **extra: str) -> Dict[str, str]:
        params = {"f": "json", **extra}
        if self._api_token:
            params["token"] = self._api_token
        return params

    def job_url(self, job_id: str) -> str:
        return f"{self.service_url}/jobs/{job_id}"

    def result_map_url(self, job_id: str) -> str:
        """Result map service companion of the GP service (…/MapServer/jobs/{jobId})."""
        if self.service_url.endswith("/GPServer"):
            return f"{self.service_url[: -len('/GPServer')]}/MapServer/jobs/{job_id}"
        return f"{self.service_url}/jobs/{job_id}"

    # ----------------- RemoteJobClientPort -----------------
    async def submit(self, parameters: JobParameters) -> JobHandle:
        form = self._params(
            **{name: encode_gp_value(value) for name, value in parameters.inputs.items()}
        )
        synchronous = parameters.execution_mode == ExecutionMode.synchronous
        url = f"{self.task_url}/{'execute' if synchronous else 'submitJob'}"
        logger.debug(f"[arcgis:submit] POST url={url} inputs={list(parameters.inputs.keys())}")

        try:
            reply = await self.request("POST", url, data=form)
        except CommunicationError as exc:
            raise SubmissionError(
                "The geoprocessing service is unreachable",
                diagnostic=exc.diagnostic,
            ) from exc

        body = self._submission_body(reply, url)
        if synchronous:
            return self._handle_from_execute(body)

        job_id = body.get("jobId")
        if not job_id:
            raise SubmissionError(
                "The geoprocessing service did not return a job id",
                upstream_status=reply.status,
                diagnostic=str(body)[:200],
            )
        logger.debug(f"[arcgis:submit] job_id={job_id} status={body.get('jobStatus')}")
        return JobHandle(
            job_id=job_id,
            status_url=self.job_url(job_id),
            results_url=f"{self.job_url(job_id)}/results/{self.result_parameter}",
        )

    async def fetch_status(self, handle: JobHandle) -> StatusSnapshot:
        if handle.immediate_result is not None:
            return StatusSnapshot(status=JobStatus.succeeded, latest_message="Completed")
        body = await self._get_job(handle)
        raw_status = body.get("jobStatus")
        status = ESRI_STATUS_MAP.get(raw_status)
        if status is None:
            raise ServiceError(
                f"Unknown job status '{raw_status}' reported by the geoprocessing service",
                diagnostic=str(body)[:200],
            )

        messages = body.get("messages") or []
        latest = messages[-1].get("description") if messages else None
        error = None
        if status == JobStatus.failed:
            error = self._last_error_message(messages) or latest or f"Job ended with {raw_status}"
        return StatusSnapshot(status=status, latest_message=latest, error=error)

    async def fetch_result(self, handle: JobHandle) -> ResultPayload:
        if handle.immediate_result is not None:
            return handle.immediate_result

        job = await self._get_job(handle)
        if job.get("jobStatus") != "esriJobSucceeded":
            raise ResultUnavailableError(
                f"Job {handle.job_id} has not succeeded (status={job.get('jobStatus')})",
                job_id=handle.job_id,
            )

        results_url = handle.results_url or f"{self.job_url(handle.job_id)}/results/{self.result_parameter}"
        reply = await self.request("GET", results_url, params=self._params())
        raise_for_result_status(reply, results_url)
        value = self._checked_json(reply, results_url, missing=ResultUnavailableError)
        outputs = {value.get("paramName", self.result_parameter): value.get("value")}

        layer_url, extent = await self._result_layer(handle.job_id)
        return ResultPayload(layer_url=layer_url or results_url, extent=extent, outputs=outputs)

    async def cancel(self, handle: JobHandle) -> None:
        if handle.immediate_result is not None:
            return
        url = f"{self.job_url(handle.job_id)}/cancel"
        reply = await self.request("POST", url, data=self._params())
        raise_for_poll_status(reply, url)
        body = reply.body if isinstance(reply.body, dict) else {}
        logger.debug(f"[arcgis:cancel] job_id={handle.job_id} status={body.get('jobStatus')}")

    # ----------------- Helpers -----------------
    async def _get_job(self, handle: JobHandle) -> Dict[str, Any]:
        url = handle.status_url or self.job_url(handle.job_id)
        reply = await self.request("GET", url, params=self._params())
        raise_for_poll_status(reply, url)
        return self._checked_json(reply, url, missing=ServiceError)

    def _checked_json(self, reply: HttpReply, url: str, missing: type) -> Dict[str, Any]:
        """JSON object of a 200 reply, mapping embedded {"error": ...} documents."""
        body = reply.json_body(url)
        code = _error_code(body)
        if code is None:
            return body
        message = describe_error(reply)
        if code >= 500:
            raise CommunicationError(f"The geoprocessing service reported error {code}", diagnostic=message)
        if code in (400, 404):
            raise missing(message, diagnostic=f"url={url} code={code}")
        raise ServiceError(message, upstream_status=code, diagnostic=f"url={url}")

    def _submission_body(self, reply: HttpReply, url: str) -> Dict[str, Any]:
        if not reply.ok:
            raise SubmissionError(
                describe_error(reply), upstream_status=reply.status, diagnostic=f"url={url}"
            )
        if not isinstance(reply.body, dict):
            raise SubmissionError(
                "The geoprocessing service answered with an invalid document",
                upstream_status=reply.status,
                diagnostic=str(reply.body)[:200],
            )
        code = _error_code(reply.body)
        if code is not None:
            raise SubmissionError(describe_error(reply), upstream_status=code, diagnostic=f"url={url}")
        return reply.body

    def _handle_from_execute(self, body: Dict[str, Any]) -> JobHandle:
        results: List[Dict[str, Any]] = body.get("results") or []
        outputs = {r.get("paramName", f"output_{i}"): r.get("value") for i, r in enumerate(results)}
        extent = None
        for output in outputs.values():
            if isinstance(output, dict):
                extent = parse_extent(output.get("extent") or output.get("fullExtent"))
                if extent:
                    break
        return JobHandle(
            job_id=f"sync-{uuid.uuid4().hex}",
            immediate_result=ResultPayload(layer_url=self.task_url, extent=extent, outputs=outputs),
        )

    async def _result_layer(self, job_id: str) -> tuple[Optional[str], Optional[Extent]]:
        """Locate the result map service layer and its extent, if the service publishes one."""
        url = self.result_map_url(job_id)
        reply = await self.request("GET", url, params=self._params())
        if reply.status in TRANSIENT_HTTP_STATUSES:
            raise_for_poll_status(reply, url)
        if not reply.ok or not isinstance(reply.body, dict) or "error" in reply.body:
            logger.debug(f"[arcgis:result] no result map service job_id={job_id} status={reply.status}")
            return None, None
        extent = parse_extent(reply.body.get("fullExtent") or reply.body.get("initialExtent"))
        return url, extent

    @staticmethod
    def _last_error_message(messages: List[Dict[str, Any]]) -> Optional[str]:
        for message in reversed(messages):
            if message.get("type") == ERROR_MESSAGE_TYPE and message.get("description"):
                return message["description"]
        return None
