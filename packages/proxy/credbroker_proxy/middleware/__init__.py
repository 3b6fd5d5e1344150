"""HTTP middleware."""

from credbroker_proxy.middleware.cors import CORSMiddleware
from credbroker_proxy.middleware.security import SecurityHeadersMiddleware

__all__ = ["CORSMiddleware", "SecurityHeadersMiddleware"]
