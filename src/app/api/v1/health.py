from typing import Annotated, Any

from fastapi import APIRouter, Depends

from ...api.dependencies import get_pipeline
from ...services.relay import FetchPipeline

router = APIRouter(tags=["health"])


@router.get("/health", summary="Pipeline mode and pool statistics")
async def health(pipeline: Annotated[FetchPipeline, Depends(get_pipeline)]) -> dict[str, Any]:
    return {"status": "ok", **pipeline.stats()}
