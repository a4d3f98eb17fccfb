"""
Deployment targets.

Each target updates one consumer in-process and can read the value back
(directly, or for write-only GitHub secrets through their update time),
so the rotation orchestrator can verify and roll back per target.
"""

import base64
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple

import httpx
from dotenv import get_key, set_key
from nacl import encoding, public

from .base import DeploymentTarget
from ai_key_guard.core.errors import RotationTargetError, TransientIOError, mask_credential

logger = logging.getLogger(__name__)

VERCEL_TOKEN_ENV = "VERCEL_TOKEN"
GITHUB_TOKEN_ENV = "GITHUB_TOKEN"


class EnvFileTarget(DeploymentTarget):
    """A dotenv file read by a consumer at startup."""

    def __init__(self, target_id: str, path: str, variable: str = "OPENROUTER_API_KEY"):
        self.target_id = target_id
        self.path = Path(path)
        self.variable = variable

    def set_credential(self, value: str) -> None:
        try:
            self.path.touch(exist_ok=True)
            set_key(str(self.path), self.variable, value, quote_mode="never")
        except OSError as e:
            raise RotationTargetError(f"Cannot write {self.path}: {e}", self.target_id)
        logger.info("Set %s in %s to %s", self.variable, self.path, mask_credential(value))

    def get_active_credential(self) -> Optional[str]:
        if not self.path.exists():
            return None
        try:
            return get_key(str(self.path), self.variable)
        except OSError as e:
            raise RotationTargetError(f"Cannot read {self.path}: {e}", self.target_id)


class VercelEnvTarget(DeploymentTarget):
    """An environment variable of a Vercel project."""

    def __init__(
        self,
        target_id: str,
        project_id: str,
        variable: str = "OPENROUTER_API_KEY",
        token: Optional[str] = None,
        team_id: Optional[str] = None,
        environments: Sequence[str] = ("production",),
        base_url: str = "https://api.vercel.com",
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        token = token or os.environ.get(VERCEL_TOKEN_ENV)
        if not token:
            raise RotationTargetError(f"{VERCEL_TOKEN_ENV} is required", target_id)
        self.target_id = target_id
        self.project_id = project_id
        self.variable = variable
        self.environments = list(environments)
        self._params = {"teamId": team_id} if team_id else {}
        self._timeout = timeout
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout)
        self._headers = {"Authorization": f"Bearer {token}"}

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        params = dict(self._params)
        params.update(kwargs.pop("params", {}))
        try:
            response = self._client.request(
                method, path, headers=self._headers, params=params, timeout=self._timeout, **kwargs
            )
        except httpx.TimeoutException as e:
            raise TransientIOError(f"Vercel {method} {path} timed out: {e}")
        except httpx.TransportError as e:
            raise TransientIOError(f"Vercel {method} {path} failed: {e}")
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientIOError(f"Vercel {method} {path} returned {response.status_code}")
        if response.status_code >= 400:
            raise RotationTargetError(
                f"Vercel {method} {path} returned {response.status_code}: {response.text[:200]}",
                self.target_id,
            )
        return response

    def _find_env(self) -> Optional[Dict[str, Any]]:
        response = self._request(
            "GET", f"/v9/projects/{self.project_id}/env", params={"decrypt": "true"}
        )
        for env in response.json().get("envs", []):
            if env.get("key") == self.variable:
                return env
        return None

    def set_credential(self, value: str) -> None:
        existing = self._find_env()
        if existing is None:
            self._request("POST", f"/v10/projects/{self.project_id}/env", json={
                "key": self.variable,
                "value": value,
                "type": "encrypted",
                "target": self.environments,
            })
        else:
            self._request(
                "PATCH", f"/v9/projects/{self.project_id}/env/{existing['id']}", json={"value": value}
            )
        logger.info(
            "Set %s on Vercel project %s to %s", self.variable, self.project_id, mask_credential(value)
        )

    def get_active_credential(self) -> Optional[str]:
        existing = self._find_env()
        if existing is None:
            return None
        return existing.get("value")


class GitHubSecretTarget(DeploymentTarget):
    """A GitHub Actions repository secret.

    Secrets are write-only: the API returns metadata but never the value.
    Read-back compares the secret's ``updated_at`` with the timestamp seen
    right after this target's own last write. Before any write the current
    value must be supplied by the caller, typically from the environment
    the workflow already injects it into.
    """

    def __init__(
        self,
        target_id: str,
        repo: str,
        secret_name: str = "OPENROUTER_API_KEY",
        token: Optional[str] = None,
        current_value: Optional[str] = None,
        base_url: str = "https://api.github.com",
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        """Initialize the target.

        Args:
            target_id: Target id
            repo: Repository as ``owner/name``
            secret_name: Name of the Actions secret
            token: GitHub token; defaults to $GITHUB_TOKEN
            current_value: Value the secret holds before rotation, if known
            base_url: API base URL
            timeout: Timeout in seconds applied to every request
            client: Optional preconfigured HTTP client

        Raises:
            RotationTargetError: If no token is available or repo is malformed
        """
        token = token or os.environ.get(GITHUB_TOKEN_ENV)
        if not token:
            raise RotationTargetError(f"{GITHUB_TOKEN_ENV} is required", target_id)
        if repo.count("/") != 1:
            raise RotationTargetError(f"Repository must be 'owner/name', got '{repo}'", target_id)
        self.target_id = target_id
        self.repo = repo
        self.secret_name = secret_name
        self.current_value = current_value
        self._written: Optional[Tuple[str, str]] = None
        self._timeout = timeout
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout)
        self._headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._client.request(
                method, path, headers=self._headers, timeout=self._timeout, **kwargs
            )
        except httpx.TimeoutException as e:
            raise TransientIOError(f"GitHub {method} {path} timed out: {e}")
        except httpx.TransportError as e:
            raise TransientIOError(f"GitHub {method} {path} failed: {e}")
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientIOError(f"GitHub {method} {path} returned {response.status_code}")
        if response.status_code >= 400 and response.status_code != 404:
            raise RotationTargetError(
                f"GitHub {method} {path} returned {response.status_code}: {response.text[:200]}",
                self.target_id,
            )
        return response

    @property
    def _secret_path(self) -> str:
        return f"/repos/{self.repo}/actions/secrets/{self.secret_name}"

    def _updated_at(self) -> Optional[str]:
        response = self._request("GET", self._secret_path)
        if response.status_code == 404:
            return None
        return response.json().get("updated_at")

    def _encrypt(self, value: str) -> Tuple[str, str]:
        path = f"/repos/{self.repo}/actions/secrets/public-key"
        response = self._request("GET", path)
        if response.status_code == 404:
            raise RotationTargetError(f"Repository {self.repo} not found", self.target_id)
        data = response.json()
        public_key = public.PublicKey(data["key"].encode("utf-8"), encoding.Base64Encoder())
        sealed = public.SealedBox(public_key).encrypt(value.encode("utf-8"))
        return base64.b64encode(sealed).decode("utf-8"), data["key_id"]

    def set_credential(self, value: str) -> None:
        encrypted_value, key_id = self._encrypt(value)
        response = self._request(
            "PUT", self._secret_path, json={"encrypted_value": encrypted_value, "key_id": key_id}
        )
        if response.status_code == 404:
            raise RotationTargetError(f"Repository {self.repo} not found", self.target_id)
        updated_at = self._updated_at()
        if updated_at is None:
            raise RotationTargetError(f"Secret {self.secret_name} missing after write", self.target_id)
        self._written = (value, updated_at)
        logger.info(
            "Set secret %s on %s to %s", self.secret_name, self.repo, mask_credential(value)
        )

    def get_active_credential(self) -> Optional[str]:
        updated_at = self._updated_at()
        if updated_at is None:
            return None
        if self._written is not None:
            value, written_at = self._written
            if updated_at == written_at:
                return value
            raise RotationTargetError(
                f"Secret {self.secret_name} was changed by someone else", self.target_id
            )
        if self.current_value is None:
            raise RotationTargetError(
                f"Current value of write-only secret {self.secret_name} is unknown", self.target_id
            )
        return self.current_value
