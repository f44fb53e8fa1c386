"""OAuth 2.0 / OpenID Connect authorization and resource server engine for Flask."""
from .authorization import (
    ClientAuthorizationRequest,
    ClientAuthorizationRequestState,
    ClientAuthorizationRequestStore,
)
from .authorization_server import Oauth2AuthorizationServer
from .errors import ConfigurationError, InvalidCallError, Oauth2ServerError, ServerError
from .keys import EncryptionKeyManager, Encryptor
from .module import Oauth2Module
from .oidc import OidcClaim, OidcScope, OidcScopeCollection
from .repositories import Repositories
from .resource_server import AuthenticatedRequest, Oauth2ResourceServer
from .scopes import ScopeResolution, ScopeStatus, resolve_scopes
from .session import FlaskSessionStore, MemorySessionStore
from .settings import (
    SERVER_ROLE_AUTHORIZATION_SERVER,
    SERVER_ROLE_RESOURCE_SERVER,
    Oauth2Settings,
)

__version__ = '0.1.0'
