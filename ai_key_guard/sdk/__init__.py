"""
SDK for AI Key Guard.

Provides the OpenAI-compatible credential smoke test.
"""

from .openai_client import CredentialProbe

__all__ = ["CredentialProbe"]
