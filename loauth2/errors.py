"""
Exception taxonomy for the loauth2 engine.

Protocol errors (invalid token, invalid grant, invalid scope, ...) are not
defined here: they are Authlib's ``OAuth2Error`` family and are rendered by
Authlib as OAuth2 error responses.
"""


class Oauth2ServerError(Exception):
    """Base class for non-protocol errors raised by loauth2."""


class ConfigurationError(Oauth2ServerError):
    """Missing or malformed configuration (settings, keys, grant types)."""


class InvalidCallError(Oauth2ServerError):
    """A method was called out of sequence or without the required role."""


class ServerError(Oauth2ServerError):
    """Deployment misconfiguration detected while serving a request."""
