"""Secure credential broker and request proxy for generative-AI providers."""

__version__ = "0.1.0"

from credbroker.broker import CredentialBroker  # noqa: E402

__all__ = ["CredentialBroker", "__version__"]
