"""
Relay - Fetch API Endpoints

POST / executes a request through the browser engine and returns the remote
server's status, headers and body. GET / is the liveness check.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from ...api.dependencies import get_pipeline, verify_api_key
from ...schemas.fetch import FetchRequestBody, FetchResponseBody
from ...services.relay import FetchPipeline

logger = logging.getLogger(__name__)

router = APIRouter(tags=["fetch"])


@router.get(
    "/",
    response_class=PlainTextResponse,
    summary="Liveness check",
)
async def ready() -> str:
    return "Ready"


@router.post(
    "/",
    response_model=FetchResponseBody,
    dependencies=[Depends(verify_api_key)],
    summary="Fetch a URL through the browser engine",
    description=(
        "Navigates a fresh browser context to the URL, rewriting the top-level request "
        "to the given method, headers and JSON body."
    ),
)
async def fetch(
    body: FetchRequestBody,
    pipeline: Annotated[FetchPipeline, Depends(get_pipeline)],
) -> FetchResponseBody:
    """
    Execute one fetch.

    Errors (plain text bodies):
    - **400**: missing url, malformed proxy or body
    - **403**: missing or wrong x-api-key
    - **500**: engine launch, navigation, timeout, no response, internal errors
    """
    request = body.to_domain()
    request.validate()

    response = await pipeline.execute(request)
    return FetchResponseBody(**response.to_dict())
