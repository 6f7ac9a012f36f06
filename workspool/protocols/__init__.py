"""Protocol definitions for workspool collaborators.

The workspace manager only talks to git and credential stores through these
``@runtime_checkable`` protocols so callers can plug in their own
implementations.
"""

from .credential_provider_protocol import CredentialProviderProtocol, GitCredentials
from .git_provider_protocol import GitProviderProtocol


__all__ = [
    "CredentialProviderProtocol",
    "GitCredentials",
    "GitProviderProtocol",
]
