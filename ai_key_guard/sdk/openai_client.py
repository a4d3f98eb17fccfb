"""
Credential smoke test over an OpenAI-compatible API.

Confirms a freshly minted credential can actually serve a completion
before it is pushed to any consumer.
"""

import logging
from typing import Optional

from openai import OpenAI, OpenAIError

from ai_key_guard.core.errors import mask_credential

logger = logging.getLogger(__name__)


class CredentialProbe:
    """Issues one tiny chat completion with a given credential."""

    def __init__(
        self,
        model: str,
        base_url: str = "https://openrouter.ai/api/v1",
        timeout: float = 30.0,
    ):
        """Initialize the probe.

        Args:
            model: Model used for the smoke call (required)
            base_url: OpenAI-compatible API base URL
            timeout: Request timeout in seconds

        Raises:
            ValueError: If model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.model = model
        self.base_url = base_url
        self.timeout = timeout

    def check(self, credential_value: str) -> bool:
        """Return True if the credential completes a minimal request.

        API failures are reported as False; a credential that cannot serve a
        request must never reach a consumer.
        """
        if not credential_value:
            raise ValueError("credential_value is required and cannot be empty")

        client = OpenAI(
            api_key=credential_value,
            base_url=self.base_url,
            timeout=self.timeout,
            max_retries=0,
        )
        try:
            response = client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": "test"}],
                max_tokens=5,
            )
        except OpenAIError as e:
            logger.warning("Smoke test for %s failed: %s", mask_credential(credential_value), e)
            return False

        ok = bool(getattr(response, "choices", None))
        if not ok:
            logger.warning("Smoke test for %s returned no choices", mask_credential(credential_value))
        return ok

    def __call__(self, credential_value: str) -> bool:
        return self.check(credential_value)


def build_probe(model: Optional[str], base_url: str, timeout: float) -> Optional[CredentialProbe]:
    if not model:
        return None
    return CredentialProbe(model=model, base_url=base_url, timeout=timeout)
