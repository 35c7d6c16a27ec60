"""HTTP middleware for the gateway."""

from .audit import AuditMiddleware
from .security import PreAuthSecurityMiddleware, get_client_ip

__all__ = ["AuditMiddleware", "PreAuthSecurityMiddleware", "get_client_ip"]
