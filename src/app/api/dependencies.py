import logging
import secrets
from typing import Annotated

from fastapi import Depends, Header, Request

from ..core.config import Settings, settings
from ..services.relay import AuthenticationError, FetchPipeline

logger = logging.getLogger(__name__)


def get_settings() -> Settings:
    return settings


def get_pipeline(request: Request) -> FetchPipeline:
    """Pipeline created by the application lifespan."""
    return request.app.state.pipeline


async def verify_api_key(
    app_settings: Annotated[Settings, Depends(get_settings)],
    x_api_key: Annotated[str | None, Header()] = None,
) -> None:
    """Reject requests whose x-api-key does not match API_KEY (no-op when API_KEY is unset)."""
    if app_settings.API_KEY is None:
        return

    expected = app_settings.API_KEY.get_secret_value()
    if x_api_key is None or not secrets.compare_digest(x_api_key.encode(), expected.encode()):
        logger.info("Rejected request with missing or invalid x-api-key")
        raise AuthenticationError("Unauthorized")
