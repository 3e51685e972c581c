"""
Demo Page Handlers
==================

Endpoint factories rendering the demo pages. Each factory returns the
endpoint function mounted by ``authdemo.routes``.

Pages:
    - index.html: links to every protected area plus the current profiles
    - protectedIndex.html: the profiles of a user who passed security
    - loginForm.html: the form posting to the FormClient callback
    - jwt.html: a JWT generated from the current profile

Template errors are not caught here; they reach the application's global
exception handler.
"""

import logging
from typing import Callable, List, Optional

from fastapi import Depends, Request
from fastapi.responses import HTMLResponse, Response
from fastapi.templating import Jinja2Templates

from authdemo.auth.config import SecurityConfig
from authdemo.auth.http import FormClient
from authdemo.auth.profile import ProfileManager
from authdemo.auth.routes import logout_handler
from authdemo.auth.security import secured
from authdemo.auth.tokens import JwtGenerator
from authdemo.config import Settings
from authdemo.models import ProtectedContent, UserProfile

logger = logging.getLogger(__name__)

__all__ = [
    "auth_handler",
    "form_index_json_handler",
    "generate_protected_index",
    "index_handler",
    "jwt_generator_handler",
    "login_form_handler",
    "logout_handler",
    "protected_index_handler",
    "set_content_type_handler",
]


# =============================================================================
# Helpers
# =============================================================================

def get_templates(request: Request) -> Jinja2Templates:
    return request.app.state.templates


def get_user_profiles(request: Request) -> List[UserProfile]:
    config: SecurityConfig = request.app.state.security_config
    return ProfileManager(request, config.logout_registry).get_all(True)


def response_content_type(request: Request, default: str = "text/html") -> str:
    return getattr(request.state, "content_type", None) or default


def render(request: Request, template: str, context: dict) -> HTMLResponse:
    return get_templates(request).TemplateResponse(
        request,
        template,
        context,
        media_type=response_content_type(request),
    )


# =============================================================================
# Handlers
# =============================================================================

def index_handler() -> Callable:
    async def index(request: Request) -> HTMLResponse:
        settings: Settings = request.app.state.settings
        return render(request, "index.html", {
            "name": settings.APP_NAME,
            "user_profiles": get_user_profiles(request),
        })

    return index


def set_content_type_handler(content_type: str):
    """Dependency fixing the content type of the route's response."""

    async def set_content_type(request: Request) -> None:
        request.state.content_type = content_type

    return Depends(set_content_type)


def auth_handler(config: SecurityConfig, clients: Optional[str] = None, authorizers: Optional[str] = None):
    """Dependency protecting a route with the given clients and authorizers."""
    return Depends(secured(clients, authorizers, config=config))


def generate_protected_index(consumer: Callable[[Request, str], Response]) -> Callable:
    """
    Render protectedIndex.html and hand the page to ``consumer``.

    Args:
        consumer: Builds the response from the request and the rendered page
    """

    async def protected_index(request: Request) -> Response:
        template = get_templates(request).get_template("protectedIndex.html")
        content = template.render(request=request, user_profiles=get_user_profiles(request))
        return consumer(request, content)

    return protected_index


def protected_index_handler() -> Callable:
    return generate_protected_index(
        lambda request, content: HTMLResponse(content, media_type=response_content_type(request))
    )


def form_index_json_handler() -> Callable:
    """Protected index wrapped in a pretty-printed JSON object."""

    def to_json(request: Request, content: str) -> Response:
        return Response(
            ProtectedContent(content=content).model_dump_json(indent=2),
            media_type=response_content_type(request, "application/json"),
        )

    return generate_protected_index(to_json)


def login_form_handler(config: SecurityConfig) -> Callable:
    client = config.clients.find_client("FormClient")
    if not isinstance(client, FormClient):
        raise TypeError(f"FormClient expected, got {type(client).__name__}")
    url = client.compute_callback_url()

    async def login_form(request: Request) -> HTMLResponse:
        return render(request, "loginForm.html", {
            "url": url,
            "username": request.query_params.get(client.username_parameter, ""),
            "error": request.query_params.get(client.ERROR_PARAMETER),
        })

    return login_form


def jwt_generator_handler(settings: Settings) -> Callable:
    generator = JwtGenerator(settings.JWT_SALT)

    async def jwt_page(request: Request) -> HTMLResponse:
        profiles = get_user_profiles(request)
        token = generator.generate(profiles[0]) if profiles else ""
        return render(request, "jwt.html", {"token": token})

    return jwt_page
