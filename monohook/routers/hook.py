"""
The webhook endpoint: every path, every method, only POST triggers.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from starlette.requests import ClientDisconnect
from starlette.responses import Response

from monohook.services.admission_queue import AdmissionQueue
from monohook.services.auth import is_authorized
from monohook.services.jobs import BodyPipe, JobBuilder
from monohook.settings import HookConfig

router = APIRouter()
logger = logging.getLogger(__name__)

HTTP_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def get_config(request: Request) -> HookConfig:
    return request.app.state.config


def get_queue(request: Request) -> AdmissionQueue:
    return request.app.state.admission_queue


def get_builder(request: Request) -> JobBuilder:
    return request.app.state.job_builder


def request_url(request: Request) -> str:
    """Path and query string exactly as the client sent them."""
    raw_path = request.scope.get("raw_path")
    if raw_path:
        path = raw_path.split(b"?", 1)[0].decode("latin-1")
    else:
        path = request.url.path
    query = request.scope.get("query_string", b"").decode("latin-1")
    return f"{path}?{query}" if query else path


async def _stream_body(request: Request, pipe: BodyPipe, job_id: int) -> None:
    """Copy the request body into the job's stdin pipe, then close it."""
    try:
        copied = await pipe.forward(request.stream())
    except BrokenPipeError:
        logger.debug("Job %d stopped reading its input before the body ended", job_id)
    except ClientDisconnect:
        logger.debug("Client disconnected while sending the body of job %d", job_id)
    else:
        logger.debug("Forwarded %d body bytes to job %d", copied, job_id)


@router.api_route("/{path:path}", methods=HTTP_METHODS, include_in_schema=False)
async def trigger(
    request: Request,
    config: HookConfig = Depends(get_config),
    queue: AdmissionQueue = Depends(get_queue),
    builder: JobBuilder = Depends(get_builder),
) -> Response:
    if request.method.upper() != "POST":
        return Response(status_code=405)

    if not is_authorized(
        config.authorization,
        request.headers,
        request.query_params.multi_items(),
    ):
        logger.info("Unauthorized trigger from %s", request.client.host if request.client else "-")
        return Response(status_code=config.unauthorized_status)

    job, pipe = builder.build(request.headers.items(), request_url(request))

    if not queue.try_enqueue(job):
        # Refused before any body byte is read.
        job.close()
        if pipe is not None:
            pipe.close()
        return Response(status_code=429)

    if pipe is not None:
        await _stream_body(request, pipe, job.job_id)

    return Response(status_code=202)
