"""
Collaborator interfaces.

The core only talks to the outside world through these three seams: the
credential-issuing service, deployment targets and notification channels.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional

from ai_key_guard.storage.models import Credential, IssuedCredential, UsageWindow


@dataclass(frozen=True)
class RawUsage:
    """Usage of one credential over one window as reported by the issuer."""
    request_count: int
    token_count: int
    cost: float
    origins: FrozenSet[str] = frozenset()
    model_requests: Dict[str, int] = field(default_factory=dict)
    client_id: str = ""
    estimated: bool = False


class CredentialIssuer(ABC):
    """Credential-issuing service."""

    @abstractmethod
    def list_credentials(self) -> List[Credential]:
        """Return metadata of every credential in the fleet."""

    @abstractmethod
    def get_credential(self, credential_id: str) -> Optional[Credential]:
        """Return one credential, or None if it does not exist."""

    @abstractmethod
    def fetch_usage(self, credential_id: str, window: UsageWindow, now: datetime) -> RawUsage:
        """Return usage of one credential over the window ending at ``now``."""

    @abstractmethod
    def create_credential(self, name: str, limit: Optional[float] = None) -> IssuedCredential:
        """Mint a new credential. The secret value is only returned here."""

    @abstractmethod
    def delete_credential(self, credential_id: str) -> bool:
        """Revoke a credential.

        Returns:
            True if it was deleted, False if it did not exist
        """


class DeploymentTarget(ABC):
    """A consumer holding a live reference to a credential."""

    target_id: str

    @abstractmethod
    def set_credential(self, value: str) -> None:
        """Replace the credential the consumer uses."""

    @abstractmethod
    def get_active_credential(self) -> Optional[str]:
        """Read back the credential the consumer currently uses."""


class NotificationChannel(ABC):
    """Destination for human-readable summaries."""

    @abstractmethod
    def send(self, title: str, body: str) -> bool:
        """Deliver a message. Returns True on success."""
