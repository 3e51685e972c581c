"""
Route table of the demo.

Each protected area is guarded by the clients able to log a user in there,
plus optional authorizers.
"""

from fastapi import APIRouter, Request
from fastapi.responses import Response

from authdemo import handlers
from authdemo.auth.config import SecurityConfig
from authdemo.auth.routes import callback_handler
from authdemo.auth.saml import SAML2Client
from authdemo.config import Settings
from authdemo.factory import AUTHORIZER_ADMIN, AUTHORIZER_CUSTOM

JSON_CONTENT_TYPE = "application/json"

# path, clients, authorizers
PROTECTED_PAGES = [
    ("/facebook/index.html", "FacebookClient", None),
    ("/facebookadmin/index.html", "FacebookClient", AUTHORIZER_ADMIN),
    ("/facebookcustom/index.html", "FacebookClient", AUTHORIZER_CUSTOM),
    ("/twitter/index.html", "TwitterClient,FacebookClient", None),
    ("/form/index.html", "FormClient", None),
    ("/basicauth/index.html", "IndirectBasicAuthClient", None),
    ("/cas/index.html", "CasClient", None),
    ("/saml2/index.html", "SAML2Client", None),
    ("/oidc/index.html", "OidcClient", None),
    ("/protected/index.html", None, None),
    ("/dba/index.html", "DirectBasicAuthClient,ParameterClient", None),
    ("/rest-jwt/index.html", "ParameterClient", None),
]


def saml_metadata_handler(config: SecurityConfig):
    client = config.clients.find_client("SAML2Client")
    if not isinstance(client, SAML2Client):
        raise TypeError(f"SAML2Client expected, got {type(client).__name__}")

    async def saml_metadata(request: Request) -> Response:
        return Response(client.service_provider_metadata(), media_type="application/xml")

    return saml_metadata


def create_demo_router(config: SecurityConfig, settings: Settings) -> APIRouter:
    """
    Mount the demo pages.

    Args:
        config: Security configuration built by ``authdemo.factory``
        settings: Application settings

    Returns:
        APIRouter with every demo route
    """
    router = APIRouter(tags=["demo"])

    index = handlers.index_handler()
    router.add_api_route("/", index, methods=["GET"])
    router.add_api_route("/index.html", index, methods=["GET"])

    for path, clients, authorizers in PROTECTED_PAGES:
        router.add_api_route(
            path,
            handlers.protected_index_handler(),
            methods=["GET"],
            dependencies=[handlers.auth_handler(config, clients, authorizers)],
        )

    router.add_api_route(
        "/form/index.html.json",
        handlers.form_index_json_handler(),
        methods=["GET"],
        dependencies=[
            handlers.auth_handler(config, "FormClient"),
            handlers.set_content_type_handler(JSON_CONTENT_TYPE),
        ],
    )

    router.add_api_route("/jwt.html", handlers.jwt_generator_handler(settings), methods=["GET"])
    router.add_api_route("/loginForm", handlers.login_form_handler(config), methods=["GET"])
    router.add_api_route("/callback", callback_handler(config), methods=["GET", "POST"])
    router.add_api_route("/logout", handlers.logout_handler(config), methods=["GET"])
    router.add_api_route("/saml2/metadata", saml_metadata_handler(config), methods=["GET"])

    return router
