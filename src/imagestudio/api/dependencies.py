"""FastAPI dependencies resolving shared components from app state.

Components are created once in the application lifespan and stored on
``app.state``; these getters hand them to route handlers.
"""

from typing import Annotated

from fastapi import Depends, Header, Request

from imagestudio.core.config import Settings
from imagestudio.services.analytics import ExecutionCounter
from imagestudio.services.storage.client import BlobStoreClient
from imagestudio.services.storage.view_resolver import SignedViewResolver
from imagestudio.workers.sessions import DEFAULT_SESSION_ID, SessionRegistry, StudioSession


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_blob_client(request: Request) -> BlobStoreClient:
    return request.app.state.blob_client


def get_view_resolver(request: Request) -> SignedViewResolver:
    return request.app.state.view_resolver


def get_execution_counter(request: Request) -> ExecutionCounter:
    return request.app.state.execution_counter


def get_session_registry(request: Request) -> SessionRegistry:
    return request.app.state.sessions


def get_studio_session(
    registry: Annotated[SessionRegistry, Depends(get_session_registry)],
    x_studio_session: Annotated[str | None, Header()] = None,
) -> StudioSession:
    """Get the caller's studio session.

    Each browser tab sends its own ``X-Studio-Session`` id; requests without
    the header share the default session.
    """
    return registry.get(x_studio_session or DEFAULT_SESSION_ID)
