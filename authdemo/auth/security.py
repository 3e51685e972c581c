"""
Route protection.

``secured(clients, authorizers)`` builds a FastAPI dependency that:

1. resolves the clients allowed on the route (``client_name`` in the request
   may pick one of them)
2. for direct clients, authenticates the request itself
3. with profiles: runs the named authorizers (403 when one fails)
4. without profiles: remembers the requested URL and redirects to the first
   indirect client, or answers 401

The dependency returns the profiles of the request.
"""

import logging
from typing import Callable, List, Optional

from fastapi import HTTPException, Request, status

from authdemo.auth.clients import CLIENT_NAME_PARAMETER, Client, IndirectClient
from authdemo.auth.config import SecurityConfig
from authdemo.auth.exceptions import CredentialsError, HttpAction
from authdemo.auth.http import DirectBasicAuthClient, IndirectBasicAuthClient
from authdemo.auth.profile import SESSION_REQUESTED_URL_KEY, ProfileManager
from authdemo.models import UserProfile

logger = logging.getLogger(__name__)


def get_security_config(request: Request) -> SecurityConfig:
    """Security configuration attached to the application by create_app."""
    return request.app.state.security_config


def _split(names: Optional[str]) -> List[str]:
    if not names:
        return []
    return [name.strip() for name in names.split(",") if name.strip()]


def current_clients(request: Request, config: SecurityConfig, client_names: Optional[str]) -> List[Client]:
    """
    Clients allowed on the route, narrowed by the ``client_name`` request parameter.

    Raises:
        ClientNotFoundError: If a configured name has no client
    """
    clients = [config.clients.find_client(name) for name in _split(client_names)]

    requested = request.query_params.get(CLIENT_NAME_PARAMETER)
    if requested:
        for client in clients:
            if client.name.lower() == requested.strip().lower():
                return [client]
    return clients


def secured(
    clients: Optional[str] = None,
    authorizers: Optional[str] = None,
    config: Optional[SecurityConfig] = None,
) -> Callable:
    """
    Build the security dependency of a route.

    Args:
        clients: Comma-separated client names; None accepts any existing login
        authorizers: Comma-separated authorizer names, all must pass
        config: Security configuration, defaults to the application's
    """
    authorizer_names = _split(authorizers)

    async def dependency(request: Request) -> List[UserProfile]:
        security_config = config or get_security_config(request)
        route_clients = current_clients(request, security_config, clients)
        manager = ProfileManager(request, security_config.logout_registry)

        first_direct = bool(route_clients) and route_clients[0].direct
        profiles = manager.get_all(read_from_session=not first_direct)

        if not profiles and first_direct:
            profile = await _authenticate_direct(request, route_clients)
            if profile is not None:
                manager.save(False, profile)
                profiles = [profile]

        if profiles:
            for name in authorizer_names:
                authorizer = security_config.authorizers.get(name)
                if authorizer is None:
                    raise ValueError(f"Authorizer not found: {name}")
                if not authorizer.is_authorized(request, profiles):
                    logger.info(
                        "Access denied",
                        extra={"path": request.url.path, "authorizer": name},
                    )
                    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="forbidden")
            return profiles

        if route_clients and isinstance(route_clients[0], IndirectClient):
            client = route_clients[0]
            request.session[SESSION_REQUESTED_URL_KEY] = str(request.url)
            location = await client.redirect(request)
            logger.info(
                "Redirecting to identity provider",
                extra={"client": client.name, "path": request.url.path},
            )
            raise HttpAction.redirect(location)

        for client in route_clients:
            if isinstance(client, (DirectBasicAuthClient, IndirectBasicAuthClient)):
                raise HttpAction.unauthorized(client.realm)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="authentication required")

    return dependency


async def _authenticate_direct(request: Request, clients: List[Client]) -> Optional[UserProfile]:
    for client in clients:
        if not client.direct:
            continue
        try:
            profile = await client.authenticate(request)
        except CredentialsError as e:
            logger.info(
                "Direct authentication failed",
                extra={"client": client.name, "reason": str(e)},
            )
            continue
        if profile is not None:
            logger.debug("Direct authentication succeeded", extra={"client": client.name})
            return profile
    return None
