"""
Gateway Security: caller authorization.

- Authorizer protocol (external identity collaborator)
- AllowAllAuthorizer / StaticAuthorizer implementations
"""
from core.security.authz import AllowAllAuthorizer, Authorizer, StaticAuthorizer, require

__all__ = ["AllowAllAuthorizer", "Authorizer", "StaticAuthorizer", "require"]
