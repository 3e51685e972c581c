"""
Callback and logout endpoints shared by every indirect client.
"""

import logging

from fastapi import HTTPException, Request, status
from fastapi.responses import RedirectResponse

from authdemo.auth.clients import CLIENT_NAME_PARAMETER, IndirectClient
from authdemo.auth.config import SecurityConfig
from authdemo.auth.exceptions import ClientNotFoundError
from authdemo.auth.profile import SESSION_REQUESTED_URL_KEY, ProfileManager

logger = logging.getLogger(__name__)

DEFAULT_URL = "/"


def callback_handler(config: SecurityConfig):
    """Finish an indirect login: read credentials, save the profile, go back."""

    async def callback(request: Request) -> RedirectResponse:
        name = request.query_params.get(CLIENT_NAME_PARAMETER)
        if not name:
            raise ClientNotFoundError(f"Missing {CLIENT_NAME_PARAMETER} parameter on callback")

        client = config.clients.find_client(name)
        if not isinstance(client, IndirectClient):
            raise ClientNotFoundError(f"Client {client.name} is not an indirect client")

        profile = await client.authenticate(request)
        if profile is None:
            logger.info("Callback without credentials", extra={"client": client.name})
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="authentication required")

        manager = ProfileManager(request, config.logout_registry)
        manager.save(True, profile)
        logger.info(
            "User logged in",
            extra={"client": client.name, "typed_id": profile.typed_id},
        )

        requested_url = request.session.pop(SESSION_REQUESTED_URL_KEY, None) or DEFAULT_URL
        return RedirectResponse(url=requested_url, status_code=status.HTTP_302_FOUND)

    return callback


def is_local_url(url: str) -> bool:
    """Relative path on this application (no scheme, no host)."""
    return url.startswith("/") and not url.startswith("//") and "\\" not in url


def logout_handler(config: SecurityConfig, default_url: str = DEFAULT_URL):
    """Application logout: forget the profiles, then redirect."""

    async def logout(request: Request) -> RedirectResponse:
        manager = ProfileManager(request, config.logout_registry)
        profile = manager.get()
        manager.remove(True)
        logger.info(
            "User logged out",
            extra={"typed_id": profile.typed_id if profile else None},
        )

        url = request.query_params.get("url")
        target = url if url and is_local_url(url) else default_url
        return RedirectResponse(url=target, status_code=status.HTTP_302_FOUND)

    return logout

