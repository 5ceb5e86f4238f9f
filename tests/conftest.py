import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("N8N_API_KEY", "test-n8n-key")
os.environ.setdefault("SECRET_KEY", "test-secret")

import asyncio  # noqa: E402
import copy  # noqa: E402
import itertools  # noqa: E402
import json  # noqa: E402
from datetime import datetime, timedelta, timezone  # noqa: E402
from urllib.parse import parse_qs  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from tenantflow.config import OAuthProviderConfig, ProvisioningConfig, RemotePlatformConfig, TemplateSpec  # noqa: E402
from tenantflow.integrations import GoogleOAuthClient, N8NClient  # noqa: E402
from tenantflow.models import Base  # noqa: E402
from tenantflow.schemas.provisioning import OAuthGrant, SignupUser  # noqa: E402
from tenantflow.services import (  # noqa: E402
    CredentialProvisioner,
    CredentialStore,
    ProvisioningCleanup,
    ProvisioningLedger,
    ProvisioningOrchestrator,
    RemoteRegistrar,
    TemplateRepository,
    WorkflowCloner,
)

N8N_URL = "https://n8n.test/api/v1"
TOKEN_URL = "https://oauth.test/token"

CALENDAR_SCOPE = "https://www.googleapis.com/auth/calendar"
MAIL_SCOPE = "https://www.googleapis.com/auth/gmail.modify"
SHEETS_SCOPE = "https://www.googleapis.com/auth/spreadsheets"
DRIVE_SCOPE = "https://www.googleapis.com/auth/drive"
FULL_SCOPE = " ".join([SHEETS_SCOPE, CALENDAR_SCOPE, MAIL_SCOPE, DRIVE_SCOPE])


def _node(node_id, name, node_type, credentials=None, **extra):
    node = {
        "id": node_id,
        "name": name,
        "type": node_type,
        "typeVersion": 1,
        "position": [0, 0],
        "parameters": {},
    }
    if credentials:
        node["credentials"] = credentials
    node.update(extra)
    return node


def _chain(*names):
    return {
        source: {"main": [[{"node": target, "type": "main", "index": 0}]]}
        for source, target in zip(names, names[1:])
    }


TEMPLATES = {
    "T1": {
        "id": "T1",
        "name": "CV Processing Workflow",
        "active": True,
        "nodes": [
            _node("webhook-trigger", "Webhook", "n8n-nodes-base.webhook", webhookId="cv-hook"),
            _node(
                "gmail-node",
                "Gmail",
                "n8n-nodes-base.gmail",
                {"gmailOAuth2Api": {"id": "tmpl-gmail", "name": "Template Gmail"}},
            ),
        ],
        "connections": _chain("Webhook", "Gmail"),
        "settings": {"executionOrder": "v1"},
    },
    "T2": {
        "id": "T2",
        "name": "Meeting Bot & Analysis",
        "active": True,
        "nodes": [
            _node("webhook-trigger", "Webhook", "n8n-nodes-base.webhook"),
            _node(
                "calendar-node",
                "Google Calendar",
                "n8n-nodes-base.googleCalendar",
                {"googleCalendarOAuth2Api": {"id": "tmpl-cal", "name": "Template Calendar"}},
            ),
        ],
        "connections": _chain("Webhook", "Google Calendar"),
        "settings": {"executionOrder": "v1"},
    },
    "T3": {
        "id": "T3",
        "name": "Interview Scheduler",
        "active": True,
        "nodes": [
            _node("schedule", "Schedule", "n8n-nodes-base.scheduleTrigger"),
            _node(
                "calendar-node",
                "Google Calendar",
                "n8n-nodes-base.googleCalendar",
                {"googleCalendarOAuth2Api": {"id": "tmpl-cal", "name": "Template Calendar"}},
            ),
            _node(
                "gmail-node",
                "Send Invite",
                "n8n-nodes-base.gmail",
                {"gmailOAuth2Api": {"id": "tmpl-gmail", "name": "Template Gmail"}},
            ),
        ],
        "connections": _chain("Schedule", "Google Calendar", "Send Invite"),
        "settings": {"executionOrder": "v1"},
    },
    "T4": {
        "id": "T4",
        "name": "Candidate Sheet Sync",
        "active": False,
        "nodes": [
            _node(
                "sheet-node",
                "Google Sheets",
                "n8n-nodes-base.googleSheets",
                {"googleSheetsOAuth2Api": {"id": "tmpl-sheets", "name": "Template Sheets"}},
            ),
            _node(
                "ai-node",
                "Score CV",
                "@n8n/n8n-nodes-langchain.openAi",
                {"openAiApi": {"id": "shared-openai", "name": "Platform OpenAI"}},
            ),
        ],
        "connections": _chain("Google Sheets", "Score CV"),
        "settings": {},
    },
}


class FakeN8N:
    """In-memory stand-in for the n8n public API."""

    def __init__(self, templates=None, api_key="test-key"):
        self.api_key = api_key
        self.workflows = copy.deepcopy(templates if templates is not None else TEMPLATES)
        self.credentials = {}
        self.requests = []
        self.created_workflows = []
        self.fail_create = {}
        self.fail_delete = set()
        self.fail_credential_types = set()
        self.raw_credential_reply = None
        self.transient_failures = 0
        self._ids = itertools.count(1)

    @property
    def transport(self):
        return httpx.MockTransport(self.handle)

    def calls(self, method, prefix):
        return [r for r in self.requests if r[0] == method and r[1].startswith(prefix)]

    def handle(self, request):
        path = request.url.path.replace("/api/v1", "", 1)
        method = request.method
        body = json.loads(request.content) if request.content else None
        self.requests.append((method, path, body))

        if request.headers.get("X-N8N-API-KEY") != self.api_key:
            return httpx.Response(401, json={"message": "unauthorized"})
        if self.transient_failures > 0:
            self.transient_failures -= 1
            return httpx.Response(503, json={"message": "busy"})

        parts = [p for p in path.split("/") if p]
        if parts[0] == "workflows":
            return self._workflows(method, parts, body, request)
        if parts[0] == "credentials":
            return self._credentials(method, parts, body)
        return httpx.Response(404, json={"message": "not found"})

    def _workflows(self, method, parts, body, request):
        if method == "GET" and len(parts) == 1:
            rows = [
                {"id": wid, "name": wf["name"], "active": wf.get("active", False)}
                for wid, wf in self.workflows.items()
            ]
            cursor = int(request.url.params.get("cursor") or 0)
            limit = int(request.url.params.get("limit") or 100)
            page = rows[cursor : cursor + limit]
            next_cursor = str(cursor + limit) if cursor + limit < len(rows) else None
            return httpx.Response(200, json={"data": page, "nextCursor": next_cursor})
        if method == "POST" and len(parts) == 1:
            for marker, (status_code, message) in self.fail_create.items():
                if marker in body["name"]:
                    return httpx.Response(status_code, json={"message": message})
            workflow_id = f"wf-{next(self._ids)}"
            stored = dict(body, id=workflow_id, active=False)
            self.workflows[workflow_id] = stored
            self.created_workflows.append(workflow_id)
            return httpx.Response(200, json=stored)
        workflow_id = parts[1]
        if workflow_id not in self.workflows:
            return httpx.Response(404, json={"message": "Not Found"})
        if method == "GET":
            return httpx.Response(200, json=self.workflows[workflow_id])
        if method == "POST" and parts[-1] == "activate":
            self.workflows[workflow_id]["active"] = True
            return httpx.Response(200, json=self.workflows[workflow_id])
        if method == "DELETE":
            if workflow_id in self.fail_delete:
                return httpx.Response(500, json={"message": "delete failed"})
            return httpx.Response(200, json=self.workflows.pop(workflow_id))
        return httpx.Response(405)

    def _credentials(self, method, parts, body):
        if method == "POST" and len(parts) == 1:
            if body["type"] in self.fail_credential_types:
                return httpx.Response(400, json={"message": f"bad credential data for {body['type']}"})
            if self.raw_credential_reply is not None:
                return httpx.Response(200, text=self.raw_credential_reply)
            credential_id = f"cred-{next(self._ids)}"
            self.credentials[credential_id] = body
            return httpx.Response(200, json={"id": credential_id, "name": body["name"]})
        if method == "GET" and parts[1] == "schema":
            return httpx.Response(200, json={"type": "object", "properties": {"clientId": {"type": "string"}}})
        credential_id = parts[1]
        if method == "DELETE":
            if credential_id in self.fail_delete:
                return httpx.Response(500, json={"message": "delete failed"})
            if credential_id not in self.credentials:
                return httpx.Response(404, json={"message": "Not Found"})
            return httpx.Response(200, json=self.credentials.pop(credential_id))
        return httpx.Response(405)


class FakeTokenEndpoint:
    def __init__(self, scope=None, expires_in=3600, status_code=200, delay=0.01):
        self.scope = scope
        self.expires_in = expires_in
        self.status_code = status_code
        self.delay = delay
        self.calls = []

    @property
    def transport(self):
        return httpx.MockTransport(self.handle)

    async def handle(self, request):
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        self.calls.append(form)
        await asyncio.sleep(self.delay)
        if self.status_code != 200:
            return httpx.Response(self.status_code, json={"error": "invalid_grant"})
        payload = {
            "access_token": f"fresh-token-{len(self.calls)}",
            "expires_in": self.expires_in,
            "token_type": "Bearer",
        }
        if self.scope is not None:
            payload["scope"] = self.scope
        return httpx.Response(200, json=payload)


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def fake_n8n():
    return FakeN8N()


@pytest.fixture
def token_endpoint():
    return FakeTokenEndpoint()


@pytest.fixture
def remote_config():
    return RemotePlatformConfig(
        base_url=N8N_URL,
        api_key="test-key",
        timeout_seconds=5,
        max_retries=2,
        backoff_seconds=0,
    )


@pytest.fixture
async def n8n_client(fake_n8n, remote_config):
    client = N8NClient(remote_config, transport=fake_n8n.transport)
    yield client
    await client.aclose()


@pytest.fixture
async def oauth_client(token_endpoint):
    client = GoogleOAuthClient(
        OAuthProviderConfig(
            token_url=TOKEN_URL,
            client_id="client-id",
            client_secret="client-secret",
            backoff_seconds=0,
        ),
        transport=token_endpoint.transport,
    )
    yield client
    await client.aclose()


@pytest.fixture
def ledger(session_factory):
    return ProvisioningLedger(session_factory)


@pytest.fixture
def credential_store(session_factory):
    return CredentialStore(session_factory)


@pytest.fixture
def provisioner(n8n_client, oauth_client, credential_store):
    return CredentialProvisioner(n8n_client, oauth_client, credential_store)


@pytest.fixture
def cleanup(n8n_client, ledger, credential_store):
    return ProvisioningCleanup(n8n_client, ledger=ledger, credential_store=credential_store)


@pytest.fixture
def provisioning_config():
    return ProvisioningConfig(
        templates=[TemplateSpec(template_id=t) for t in ("T1", "T2", "T3", "T4")],
        ledger_retry_delay_seconds=0,
    )


@pytest.fixture
def make_orchestrator(n8n_client, provisioner, ledger, cleanup, provisioning_config):
    def factory(config=None, **overrides):
        parts = {
            "templates": TemplateRepository(n8n_client),
            "credentials": provisioner,
            "cloner": WorkflowCloner(),
            "registrar": RemoteRegistrar(n8n_client),
            "ledger": ledger,
            "config": config or provisioning_config,
            "cleanup": cleanup,
        }
        parts.update(overrides)
        return ProvisioningOrchestrator(**parts)

    return factory


@pytest.fixture
def user():
    return SignupUser(id="user-1", email="recruiter@example.com", name="Recruiter")


@pytest.fixture
def grant():
    return OAuthGrant(
        access_token="initial-token",
        refresh_token="refresh-1",
        client_id="client-id",
        client_secret="client-secret",
        scope=FULL_SCOPE,
        expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
    )
