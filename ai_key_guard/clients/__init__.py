"""
Clients for the collaborators of AI Key Guard.

Provides the credential-issuing client, deployment targets and
notification channels.
"""

from .base import CredentialIssuer, DeploymentTarget, NotificationChannel, RawUsage
from .notify import LogChannel, SlackWebhookChannel
from .openrouter import OpenRouterIssuer
from .targets import EnvFileTarget, GitHubSecretTarget, VercelEnvTarget

__all__ = [
    "CredentialIssuer",
    "DeploymentTarget",
    "NotificationChannel",
    "RawUsage",
    "LogChannel",
    "SlackWebhookChannel",
    "OpenRouterIssuer",
    "EnvFileTarget",
    "GitHubSecretTarget",
    "VercelEnvTarget",
]
