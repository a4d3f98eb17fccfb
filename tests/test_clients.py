"""
Unit tests for the HTTP and file clients.

HTTP clients run against httpx.MockTransport; the dotenv target against a
temporary file.
"""

import base64
import json
import os
import tempfile
from datetime import timezone

import httpx
import pytest
from nacl.encoding import Base64Encoder
from nacl.public import PrivateKey, SealedBox

from ai_key_guard.clients.notify import LogChannel, SlackWebhookChannel
from ai_key_guard.clients.openrouter import OpenRouterIssuer
from ai_key_guard.clients.targets import EnvFileTarget, GitHubSecretTarget, VercelEnvTarget
from ai_key_guard.core.errors import (
    AuthError,
    ConfigurationError,
    KeyGuardError,
    PartialDataError,
    RotationTargetError,
    TransientIOError,
)
from ai_key_guard.storage.models import UsageWindow
from tests.fakes import NOW

BASE_URL = "https://openrouter.test/api/v1"

KEY_ITEM = {
    "hash": "abc123",
    "name": "Production",
    "label": "sk-or-v1-...f00d",
    "disabled": False,
    "limit": 50,
    "usage_daily": 1.5,
    "usage_weekly": 7.25,
    "usage_monthly": 30.0,
    "created_at": "2026-01-02T03:04:05Z",
}


def _issuer(handler) -> OpenRouterIssuer:
    client = httpx.Client(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    return OpenRouterIssuer(provisioning_key="prov-key-123456789", client=client)


class TestOpenRouterIssuer:
    """Test the credential-issuing client."""

    def test_requires_provisioning_key(self, monkeypatch):
        monkeypatch.delenv("OPENROUTER_PROVISIONING_KEY", raising=False)
        with pytest.raises(ConfigurationError, match="OPENROUTER_PROVISIONING_KEY"):
            OpenRouterIssuer()

    def test_list_credentials(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"data": [KEY_ITEM]})

        credentials = _issuer(handler).list_credentials()

        assert len(credentials) == 1
        credential = credentials[0]
        assert credential.id == "abc123"
        assert credential.name == "Production"
        assert credential.limit == 50.0
        assert credential.created_at.tzinfo == timezone.utc
        assert requests[0].headers["Authorization"] == "Bearer prov-key-123456789"
        assert requests[0].url.path == "/api/v1/keys"

    def test_list_rejects_bad_payload(self):
        issuer = _issuer(lambda request: httpx.Response(200, json={"keys": []}))
        with pytest.raises(KeyGuardError, match="Invalid response format"):
            issuer.list_credentials()

    @pytest.mark.parametrize("item", [
        dict(KEY_ITEM, created_at="last tuesday"),
        dict(KEY_ITEM, limit="unlimited"),
        "abc123",
    ])
    def test_malformed_credential_is_keyguard_error(self, item):
        issuer = _issuer(lambda request: httpx.Response(200, json={"data": [item]}))
        with pytest.raises(KeyGuardError, match="Invalid credential"):
            issuer.list_credentials()

    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_errors(self, status):
        issuer = _issuer(lambda request: httpx.Response(status))
        with pytest.raises(AuthError) as exc_info:
            issuer.list_credentials()
        assert exc_info.value.status_code == status

    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_transient_statuses(self, status):
        issuer = _issuer(lambda request: httpx.Response(status))
        with pytest.raises(TransientIOError):
            issuer.list_credentials()

    def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(TransientIOError, match="timed out"):
            _issuer(handler).list_credentials()

    def test_fetch_usage(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={"data": {
                "requests": 42,
                "tokens": 1234,
                "cost": 0.75,
                "origins": ["1.1.1.1", "2.2.2.2"],
                "models": {"openai/gpt-4": 40, "openai/gpt-4o-mini": 2},
                "user_agent": "curl/8.0",
            }})

        usage = _issuer(handler).fetch_usage("abc123", UsageWindow.DAILY, NOW)

        assert seen["path"] == "/api/v1/keys/abc123/usage"
        assert seen["params"]["end"] == NOW.isoformat()
        assert usage.request_count == 42
        assert usage.token_count == 1234
        assert usage.cost == 0.75
        assert usage.origins == frozenset({"1.1.1.1", "2.2.2.2"})
        assert usage.model_requests["openai/gpt-4"] == 40
        assert usage.client_id == "curl/8.0"
        assert not usage.estimated

    def test_fetch_usage_falls_back_to_key_totals(self):
        def handler(request):
            if request.url.path.endswith("/usage"):
                return httpx.Response(404)
            return httpx.Response(200, json={"data": KEY_ITEM})

        usage = _issuer(handler).fetch_usage("abc123", UsageWindow.WEEKLY, NOW)

        assert usage.estimated
        assert usage.cost == 7.25
        assert usage.request_count == 0

    def test_fallback_without_window_spend_is_partial(self):
        def handler(request):
            if request.url.path.endswith("/usage"):
                return httpx.Response(404)
            return httpx.Response(200, json={"data": {"hash": "abc123", "name": "Production"}})

        with pytest.raises(PartialDataError) as exc_info:
            _issuer(handler).fetch_usage("abc123", UsageWindow.MONTHLY, NOW)
        assert exc_info.value.credential_id == "abc123"

    def test_create_credential(self):
        def handler(request):
            assert request.method == "POST"
            assert json.loads(request.content) == {"name": "rotated", "limit": 25.0}
            return httpx.Response(201, json={"data": dict(KEY_ITEM, hash="new456"), "key": "sk-or-v1-secret"})

        issued = _issuer(handler).create_credential("rotated", 25.0)

        assert issued.credential.id == "new456"
        assert issued.value == "sk-or-v1-secret"
        assert "secret" not in repr(issued)

    def test_create_without_key_fails(self):
        issuer = _issuer(lambda request: httpx.Response(200, json={"data": KEY_ITEM}))
        with pytest.raises(KeyGuardError, match="No key"):
            issuer.create_credential("rotated")

    def test_delete_credential(self):
        issuer = _issuer(lambda request: httpx.Response(200, json={"data": {"success": True}}))
        assert issuer.delete_credential("abc123") is True

    def test_delete_missing_credential(self):
        issuer = _issuer(lambda request: httpx.Response(404))
        assert issuer.delete_credential("abc123") is False

    def test_get_missing_credential(self):
        issuer = _issuer(lambda request: httpx.Response(404))
        assert issuer.get_credential("abc123") is None


class TestEnvFileTarget:
    """Test the dotenv deployment target."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.path = os.path.join(self.temp_dir, ".env")

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_missing_file_has_no_credential(self):
        assert EnvFileTarget("env", self.path).get_active_credential() is None

    def test_set_and_read_back(self):
        with open(self.path, "w", encoding="utf-8") as f:
            f.write("OTHER=keep\nOPENROUTER_API_KEY=sk-old\n")
        target = EnvFileTarget("env", self.path)

        target.set_credential("sk-or-v1-new")

        assert target.get_active_credential() == "sk-or-v1-new"
        with open(self.path, encoding="utf-8") as f:
            content = f.read()
        assert "OTHER=keep" in content
        assert "sk-old" not in content

    def test_creates_file(self):
        target = EnvFileTarget("env", self.path, variable="LLM_KEY")
        target.set_credential("sk-or-v1-new")
        assert target.get_active_credential() == "sk-or-v1-new"

    def test_unwritable_path(self):
        target = EnvFileTarget("env", os.path.join(self.temp_dir, "missing-dir", ".env"))
        with pytest.raises(RotationTargetError):
            target.set_credential("sk-or-v1-new")


class TestVercelEnvTarget:
    """Test the Vercel deployment target."""

    def _target(self, handler) -> VercelEnvTarget:
        client = httpx.Client(base_url="https://vercel.test", transport=httpx.MockTransport(handler))
        return VercelEnvTarget("vercel", "prj_1", token="vercel-token", team_id="team_1", client=client)

    def test_requires_token(self, monkeypatch):
        monkeypatch.delenv("VERCEL_TOKEN", raising=False)
        with pytest.raises(RotationTargetError, match="VERCEL_TOKEN"):
            VercelEnvTarget("vercel", "prj_1")

    def test_updates_existing_variable(self):
        calls = []
        envs = [{"id": "env_1", "key": "OPENROUTER_API_KEY", "value": "sk-old"}]

        def handler(request):
            calls.append((request.method, request.url.path, dict(request.url.params)))
            if request.method == "PATCH":
                envs[0]["value"] = json.loads(request.content)["value"]
                return httpx.Response(200, json={})
            return httpx.Response(200, json={"envs": envs})

        target = self._target(handler)
        target.set_credential("sk-or-v1-new")

        assert target.get_active_credential() == "sk-or-v1-new"
        assert ("PATCH", "/v9/projects/prj_1/env/env_1", {"teamId": "team_1"}) in calls

    def test_creates_missing_variable(self):
        created = []

        def handler(request):
            if request.method == "POST":
                created.append(json.loads(request.content))
                return httpx.Response(201, json={})
            return httpx.Response(200, json={"envs": []})

        target = self._target(handler)
        target.set_credential("sk-or-v1-new")

        assert created[0]["key"] == "OPENROUTER_API_KEY"
        assert created[0]["target"] == ["production"]
        assert target.get_active_credential() is None

    def test_client_error_is_target_error(self):
        target = self._target(lambda request: httpx.Response(404, text="not found"))
        with pytest.raises(RotationTargetError, match="404"):
            target.get_active_credential()

    def test_server_error_is_transient(self):
        target = self._target(lambda request: httpx.Response(502))
        with pytest.raises(TransientIOError):
            target.set_credential("sk-or-v1-new")


class TestNotificationChannels:
    """Test Slack and log channels."""

    def test_slack_requires_url(self, monkeypatch):
        monkeypatch.delenv("SLACK_WEBHOOK_URL", raising=False)
        with pytest.raises(ValueError, match="SLACK_WEBHOOK_URL"):
            SlackWebhookChannel()

    def test_slack_send(self):
        payloads = []

        def handler(request):
            payloads.append(json.loads(request.content))
            return httpx.Response(200, text="ok")

        client = httpx.Client(transport=httpx.MockTransport(handler))
        channel = SlackWebhookChannel("https://hooks.slack.test/T/B/X", client=client)

        assert channel.send("Title", "*body*") is True
        assert payloads[0]["text"] == "Title"
        assert payloads[0]["blocks"][1]["text"]["text"] == "*body*"

    def test_slack_failure(self):
        client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
        channel = SlackWebhookChannel("https://hooks.slack.test/T/B/X", client=client)
        assert channel.send("Title", "body") is False

    def test_slack_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        channel = SlackWebhookChannel("https://hooks.slack.test/T/B/X", client=client)
        assert channel.send("Title", "body") is False

    def test_log_channel(self, caplog):
        with caplog.at_level("WARNING"):
            assert LogChannel().send("Title", "body") is True
        assert "Title" in caplog.text


class FakeGitHub:
    """In-memory Actions secrets API for one repository."""

    def __init__(self, exists: bool = True):
        self.private_key = PrivateKey.generate()
        self.secrets = {}
        self.writes = 0
        if exists:
            self.secrets["OPENROUTER_API_KEY"] = ("<sealed>", "2026-01-01T00:00:00Z")

    def __call__(self, request):
        path = request.url.path
        if path == "/repos/acme/app/actions/secrets/public-key":
            key = self.private_key.public_key.encode(Base64Encoder()).decode("utf-8")
            return httpx.Response(200, json={"key_id": "kid-1", "key": key})
        name = path.rsplit("/", 1)[-1]
        if request.method == "PUT":
            body = json.loads(request.content)
            assert body["key_id"] == "kid-1"
            sealed = base64.b64decode(body["encrypted_value"])
            value = SealedBox(self.private_key).decrypt(sealed).decode("utf-8")
            self.writes += 1
            self.secrets[name] = (value, f"2026-10-14T12:00:{self.writes:02d}Z")
            return httpx.Response(204)
        if name not in self.secrets:
            return httpx.Response(404)
        return httpx.Response(200, json={"name": name, "updated_at": self.secrets[name][1]})


class TestGitHubSecretTarget:
    """Test the GitHub Actions secret deployment target."""

    def _target(self, github: FakeGitHub, current_value=None) -> GitHubSecretTarget:
        client = httpx.Client(base_url="https://github.test", transport=httpx.MockTransport(github))
        return GitHubSecretTarget(
            "github", "acme/app", token="gh-token", current_value=current_value, client=client
        )

    def test_requires_token(self, monkeypatch):
        monkeypatch.delenv("GITHUB_TOKEN", raising=False)
        with pytest.raises(RotationTargetError, match="GITHUB_TOKEN"):
            GitHubSecretTarget("github", "acme/app")

    def test_rejects_malformed_repo(self):
        with pytest.raises(RotationTargetError, match="owner/name"):
            GitHubSecretTarget("github", "acme", token="gh-token")

    def test_writes_sealed_value_and_reads_back(self):
        github = FakeGitHub()
        target = self._target(github, current_value="sk-old")

        assert target.get_active_credential() == "sk-old"
        target.set_credential("sk-or-v1-new")

        assert github.secrets["OPENROUTER_API_KEY"][0] == "sk-or-v1-new"
        assert target.get_active_credential() == "sk-or-v1-new"

    def test_revert_reads_back_previous_value(self):
        github = FakeGitHub()
        target = self._target(github, current_value="sk-old")

        target.set_credential("sk-or-v1-new")
        target.set_credential("sk-old")

        assert github.secrets["OPENROUTER_API_KEY"][0] == "sk-old"
        assert target.get_active_credential() == "sk-old"

    def test_missing_secret_has_no_credential(self):
        assert self._target(FakeGitHub(exists=False)).get_active_credential() is None

    def test_unknown_current_value(self):
        with pytest.raises(RotationTargetError, match="unknown"):
            self._target(FakeGitHub()).get_active_credential()

    def test_outside_change_is_detected(self):
        github = FakeGitHub()
        target = self._target(github, current_value="sk-old")
        target.set_credential("sk-or-v1-new")

        github.secrets["OPENROUTER_API_KEY"] = ("someone-else", "2026-10-14T13:00:00Z")

        with pytest.raises(RotationTargetError, match="changed"):
            target.get_active_credential()
