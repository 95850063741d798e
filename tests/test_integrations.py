"""Tests for the Monday.com, SharePoint and Slack integrations."""

import json
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import httpx
import pytest
from tenacity import wait_none

from integrations.connections import (
    monday_client_for,
    notify_stage_change,
    redact,
    save_connection,
    sharepoint_client_for,
    slack_client_for,
)
from integrations.monday import (
    MONDAY_RATE_LIMIT,
    MondayClient,
    MondayRateWindow,
    _retry_after_seconds,
    format_column_values,
    get_column_value_text,
    parse_column_value,
)
from integrations.sharepoint import SharePointClient, folder_name_for_stage
from integrations.slack import SlackIntegration
from scripts.lib.circuit_breaker import CircuitBreaker
from scripts.lib.errors import (
    APIRateLimitError,
    CircuitOpenError,
    IntegrationNotConfiguredError,
    MondayAPIError,
    SharePointAPIError,
    SlackAPIError,
)
from scripts.sales.peak import STAGES


def auth(who: str) -> dict:
    return {"Authorization": f"Bearer token-{who}"}


@pytest.fixture(autouse=True)
def fresh_breakers():
    CircuitBreaker.reset_all()
    MondayRateWindow.reset_all()
    yield
    CircuitBreaker.reset_all()
    MondayRateWindow.reset_all()


def _monday_response(status=200, payload=None, headers=None):
    resp = MagicMock()
    resp.status_code = status
    resp.ok = status < 400
    resp.json.return_value = payload if payload is not None else {}
    resp.headers = headers or {}
    resp.text = json.dumps(payload or {})
    return resp


def _sent_body(client, call=-1):
    return client.session.post.call_args_list[call].kwargs["json"]


# ─── Monday.com ─────────────────────────────────────────────

class TestMondayClient:
    def test_not_configured(self):
        client = MondayClient()
        assert client.is_configured is False
        with pytest.raises(IntegrationNotConfiguredError):
            client.get_boards()

    def test_connection_test_never_raises(self):
        result = MondayClient().test_connection()
        assert result["success"] is False
        assert "not configured" in result["error"]

    def test_token_from_env(self):
        with patch.dict("os.environ", {"MONDAY_API_TOKEN": "env-token"}, clear=False):
            client = MondayClient()
        assert client.is_configured
        assert client.session.headers["Authorization"] == "env-token"

    def test_get_me(self):
        client = MondayClient(api_token="tok")
        client.session.post = MagicMock(return_value=_monday_response(
            payload={"data": {"me": {"id": "7", "name": "Riley"}}},
        ))
        assert client.test_connection() == {"success": True, "user": {"id": "7", "name": "Riley"}}

    def test_graphql_errors_raise(self):
        client = MondayClient(api_token="tok")
        client.session.post = MagicMock(return_value=_monday_response(
            payload={"errors": [{"message": "Field 'x' doesn't exist"}]},
        ))
        with pytest.raises(MondayAPIError) as exc:
            client.get_workspaces()
        assert "Field 'x' doesn't exist" in exc.value.message
        assert exc.value.code == "MONDAY_ERROR"

    def test_rejected_token(self):
        client = MondayClient(api_token="bad")
        client.session.post = MagicMock(return_value=_monday_response(status=401))
        with pytest.raises(MondayAPIError) as exc:
            client.get_me()
        assert exc.value.status_code == 401
        assert client.breaker.state == CircuitBreaker.CLOSED

    def test_server_errors_open_circuit(self):
        client = MondayClient(api_token="tok")
        client.session.post = MagicMock(return_value=_monday_response(status=500))
        for _ in range(5):
            with pytest.raises(MondayAPIError):
                client.get_me()

        with pytest.raises(CircuitOpenError):
            client.get_me()
        assert client.session.post.call_count == 5

    def test_breaker_shared_across_clients(self):
        first = MondayClient(api_token="a")
        first.session.post = MagicMock(return_value=_monday_response(status=503))
        for _ in range(5):
            with pytest.raises(MondayAPIError):
                first.get_me()

        second = MondayClient(api_token="b")
        with pytest.raises(CircuitOpenError):
            second.get_me()

    def test_rate_limited_after_retries(self):
        client = MondayClient(api_token="tok")
        client.session.post = MagicMock(return_value=_monday_response(
            status=429, headers={"Retry-After": "2"},
        ))
        with patch("integrations.monday.time.sleep") as sleep:
            with pytest.raises(APIRateLimitError) as exc:
                client.get_me()
        assert client.session.post.call_count == 3
        assert exc.value.details["retry_after"] == 2
        sleep.assert_any_call(2)

    def test_rate_limit_then_success(self):
        client = MondayClient(api_token="tok")
        client.session.post = MagicMock(side_effect=[
            _monday_response(status=429, headers={"Retry-After": "1"}),
            _monday_response(payload={"data": {"workspaces": [{"id": "w1"}]}}),
        ])
        with patch("integrations.monday.time.sleep"):
            assert client.get_workspaces() == [{"id": "w1"}]

    def test_clients_share_rate_window(self):
        first, second = MondayClient(api_token="tok"), MondayClient(api_token="tok")
        assert first.rate_window is second.rate_window
        assert MondayClient(api_token="other").rate_window is not first.rate_window

    def test_rate_window_counts_every_client(self, fake_db):
        save_connection("org-1", "monday", {"api_token": "tok"})
        clients = [monday_client_for("org-1"), monday_client_for("org-1")]
        with patch("integrations.monday.time.time", return_value=1000.0), \
                patch("integrations.monday.time.sleep") as sleep:
            for i in range(MONDAY_RATE_LIMIT + 10):
                clients[i % 2].rate_window.wait()
        assert sleep.call_count == 10

    @pytest.mark.parametrize("header,expected", [
        ("5", 5),
        ("-3", 0),
        ("soon", 30),
        (None, 30),
        ("Wed, 21 Oct 2015 07:28:00 GMT", 0),
    ])
    def test_retry_after_header(self, header, expected):
        assert _retry_after_seconds(header) == expected

    def test_retry_after_future_date(self):
        later = format_datetime(datetime.now(timezone.utc) + timedelta(seconds=120), usegmt=True)
        assert 100 <= _retry_after_seconds(later) <= 120

    def test_items_follow_cursor(self):
        client = MondayClient(api_token="tok")
        client.session.post = MagicMock(side_effect=[
            _monday_response(payload={"data": {"boards": [{"items_page": {
                "cursor": "c1", "items": [{"id": "1"}, {"id": "2"}],
            }}]}}),
            _monday_response(payload={"data": {"next_items_page": {
                "cursor": None, "items": [{"id": "3"}],
            }}}),
        ])
        items = client.get_items("42", limit=2)
        assert [i["id"] for i in items] == ["1", "2", "3"]
        assert _sent_body(client, 0)["variables"] == {"boardId": ["42"], "limit": 2}
        assert _sent_body(client, 1)["variables"] == {"cursor": "c1", "limit": 2}

    def test_items_max_stops_paging(self):
        client = MondayClient(api_token="tok")
        client.session.post = MagicMock(return_value=_monday_response(payload={"data": {"boards": [
            {"items_page": {"cursor": "c1", "items": [{"id": "1"}, {"id": "2"}]}},
        ]}}))
        assert len(client.get_items("42", limit=2, max_items=1)) == 1
        assert client.session.post.call_count == 1

    def test_search_items(self):
        client = MondayClient(api_token="tok")
        client.session.post = MagicMock(return_value=_monday_response(payload={"data": {"boards": [
            {"items_page": {"cursor": None, "items": [{"id": "1", "name": "Acme renewal"},
                                                      {"id": "2", "name": "Globex"}]}},
        ]}}))
        assert [i["id"] for i in client.search_items("42", "ACME")] == ["1"]

    def test_create_item_encodes_columns(self):
        client = MondayClient(api_token="tok")
        client.session.post = MagicMock(return_value=_monday_response(
            payload={"data": {"create_item": {"id": "99", "name": "Acme"}}},
        ))
        item = client.create_item("42", "Acme", column_values={
            "status": {"label": "Won"}, "numbers": 5, "text": None,
        })
        assert item["id"] == "99"
        variables = _sent_body(client)["variables"]
        assert "groupId" not in variables
        assert json.loads(variables["columnValues"]) == {"status": '{"label": "Won"}', "numbers": 5}

    def test_create_webhook_event_checked(self):
        client = MondayClient(api_token="tok")
        client.session.post = MagicMock()
        with pytest.raises(ValueError):
            client.create_webhook("42", "https://crm.test/hook", "board_renamed")
        client.session.post.assert_not_called()

    def test_status(self):
        status = MondayClient(api_token="tok").get_status()
        assert status["configured"] is True
        assert status["circuit"]["state"] == CircuitBreaker.CLOSED


class TestMondayColumnHelpers:
    def test_format_drops_none(self):
        assert format_column_values({"a": None, "b": "x", "c": ["y"]}) == {"b": "x", "c": '["y"]'}
        assert format_column_values(None) == {}

    def test_parse_json_value(self):
        assert parse_column_value({"value": '{"label": "Done"}'}) == {"label": "Done"}

    def test_parse_falls_back(self):
        assert parse_column_value({"value": None, "text": "Done"}) == "Done"
        assert parse_column_value({"value": "not json"}) == "not json"

    def test_column_text(self):
        item = {"column_values": [{"id": "status", "text": "Working", "value": "{}"},
                                  {"id": "owner", "text": "", "value": "raw"}]}
        assert get_column_value_text(item, "status") == "Working"
        assert get_column_value_text(item, "owner") == "raw"
        assert get_column_value_text(item, "missing") is None


# ─── SharePoint ─────────────────────────────────────────────

@pytest.fixture
def graph(monkeypatch):
    """Route every httpx.AsyncClient through a MockTransport; returns the captured requests."""
    real_client = httpx.AsyncClient
    state = {"requests": [], "routes": []}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "login.microsoftonline.com":
            return httpx.Response(200, json={"access_token": "graph-token", "expires_in": 3600})
        state["requests"].append(request)
        for route in state["routes"]:
            response = route(request)
            if response is not None:
                return response
        return httpx.Response(404, json={"error": {"message": "No route"}})

    def factory(*args, **kwargs):
        return real_client(transport=httpx.MockTransport(handler), timeout=kwargs.get("timeout"))

    monkeypatch.setattr(httpx, "AsyncClient", factory)
    return state


def _folder_route(request):
    if request.method == "POST" and request.url.path.endswith("/children"):
        body = json.loads(request.content)
        return httpx.Response(201, json={"id": f"id-{body['name']}", "name": body["name"], "webUrl": "https://sp"})
    return None


def _sharepoint():
    return SharePointClient("tenant", "client", "secret", site_id="site-1")


class TestSharePointClient:
    def test_stage_folder_names(self):
        assert folder_name_for_stage("prospecting") == "01 - Prospecting"
        assert folder_name_for_stage("advancing") == "03 - Advancing"

    @pytest.mark.asyncio
    async def test_not_configured(self):
        client = SharePointClient()
        assert client.is_configured is False
        with pytest.raises(IntegrationNotConfiguredError):
            await client.get_sites()
        assert (await client.test_connection())["success"] is False

    def test_env_credentials(self):
        env = {
            "SHAREPOINT_TENANT_ID": "t", "SHAREPOINT_CLIENT_ID": "c",
            "SHAREPOINT_CLIENT_SECRET": "s", "SHAREPOINT_SITE_ID": "site-env",
        }
        with patch.dict("os.environ", env, clear=False):
            client = SharePointClient()
        assert client.is_configured
        assert client.get_status()["site_id"] == "site-env"

    @pytest.mark.asyncio
    async def test_sites_use_bearer_token(self, graph):
        graph["routes"].append(lambda r: httpx.Response(200, json={"value": [
            {"id": "s1", "displayName": "Sales", "webUrl": "https://sp/sales"},
        ]}))
        sites = await _sharepoint().get_sites()
        assert sites == [{"id": "s1", "name": "Sales", "url": "https://sp/sales"}]
        assert graph["requests"][0].headers["Authorization"] == "Bearer graph-token"

    @pytest.mark.asyncio
    async def test_peak_folder_structure(self, graph):
        graph["routes"].append(_folder_route)
        structure = await _sharepoint().create_peak_folder_structure("Acme")

        assert structure["path"] == "Acme"
        assert list(structure["stages"]) == STAGES
        assert structure["stages"]["key_decision"]["name"] == "04 - Key Decision"
        posts = [r for r in graph["requests"] if r.method == "POST"]
        assert len(posts) == 1 + len(STAGES)
        assert posts[0].url.path == "/v1.0/sites/site-1/drive/root/children"
        assert all("root:/Acme:/children" in r.url.path for r in posts[1:])

    @pytest.mark.asyncio
    async def test_rerun_keeps_existing_folders(self, graph):
        created = set()

        def route(request):
            if request.method == "POST":
                body = json.loads(request.content)
                assert body["@microsoft.graph.conflictBehavior"] == "fail"
                key = (request.url.path, body["name"])
                if key in created:
                    return httpx.Response(409, json={"error": {
                        "code": "nameAlreadyExists", "message": "Name already exists",
                    }})
                created.add(key)
                return httpx.Response(201, json={"id": f"new-{body['name']}", "name": body["name"]})
            if request.method == "GET":
                name = request.url.path.rstrip(":").rsplit("/", 1)[-1]
                return httpx.Response(200, json={"id": f"kept-{name}", "name": name})
            return None

        graph["routes"].append(route)
        client = _sharepoint()
        first = await client.create_peak_folder_structure("Acme")
        second = await client.create_peak_folder_structure("Acme")

        assert first["root"] == {"id": "new-Acme", "name": "Acme", "url": None, "existing": False}
        assert second["root"]["existing"] is True
        assert second["root"]["id"] == "kept-Acme"
        assert all(folder["existing"] for folder in second["stages"].values())
        assert second["stages"]["prospecting"]["id"] == "kept-01 - Prospecting"
        methods = [r.method for r in graph["requests"]]
        assert "DELETE" not in methods
        assert methods.count("GET") == 1 + len(STAGES)

    @pytest.mark.asyncio
    async def test_folders_and_documents_split(self, graph):
        graph["routes"].append(lambda r: httpx.Response(200, json={"value": [
            {"id": "f1", "name": "01 - Prospecting", "folder": {"childCount": 2}},
            {"id": "d1", "name": "deck.pdf", "size": 10, "file": {"mimeType": "application/pdf"}},
        ]}))
        client = _sharepoint()
        folders = await client.get_folders(path="Acme")
        documents = await client.get_documents(path="Acme")
        assert [f["name"] for f in folders] == ["01 - Prospecting"]
        assert folders[0]["child_count"] == 2
        assert [d["mime_type"] for d in documents] == ["application/pdf"]

    @pytest.mark.asyncio
    async def test_upload(self, graph):
        def upload_route(request):
            if request.method == "PUT":
                return httpx.Response(201, json={"id": "doc-1", "name": "deck.pdf", "webUrl": "https://sp/doc"})
            return None

        graph["routes"].append(upload_route)
        uploaded = await _sharepoint().upload_document(
            "deck.pdf", b"%PDF", folder_path="Acme/01 - Prospecting", content_type="application/pdf",
        )
        request = graph["requests"][0]
        assert "Acme/01 - Prospecting/deck.pdf:/content" in request.url.path
        assert request.content == b"%PDF"
        assert request.headers["Content-Type"] == "application/pdf"
        assert uploaded["id"] == "doc-1"
        assert uploaded["file_size"] == 4

    @pytest.mark.asyncio
    async def test_graph_error_message(self, graph):
        graph["routes"].append(lambda r: httpx.Response(404, json={"error": {"message": "Item not found"}}))
        with pytest.raises(SharePointAPIError) as exc:
            await _sharepoint().get_documents(path="Missing")
        assert exc.value.message == "Item not found"
        assert exc.value.status_code == 404

    @pytest.mark.asyncio
    async def test_delete_returns_true_on_204(self, graph):
        graph["routes"].append(lambda r: httpx.Response(204) if r.method == "DELETE" else None)
        assert await _sharepoint().delete_document("doc-1") is True

    @pytest.mark.asyncio
    async def test_retries_then_fails(self, graph, monkeypatch):
        monkeypatch.setattr(SharePointClient._send.retry, "wait", wait_none())
        graph["routes"].append(lambda r: httpx.Response(503, text="busy"))
        with pytest.raises(SharePointAPIError) as exc:
            await _sharepoint().get_sites()
        assert exc.value.status_code == 503
        assert len(graph["requests"]) == 3

    @pytest.mark.asyncio
    async def test_no_site_selected(self, graph):
        client = SharePointClient("tenant", "client", "secret")
        with pytest.raises(SharePointAPIError) as exc:
            await client.get_folders()
        assert exc.value.status_code == 400


# ─── Slack ──────────────────────────────────────────────────

class FakeSlackResponse:
    def __init__(self, status, payload):
        self.status = status
        self.payload = payload

    async def json(self):
        return self.payload

    async def text(self):
        return json.dumps(self.payload)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


@pytest.fixture
def slack_api(monkeypatch):
    """Replace aiohttp.ClientSession; set `reply` to control the response."""
    state = {"calls": [], "reply": (200, {"ok": True})}

    class FakeSession:
        def __init__(self, *args, **kwargs):
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, *exc):
            return False

        def request(self, method, url, headers=None, json=None, params=None):
            state["calls"].append({"method": method, "url": url, "headers": headers,
                                   "json": json, "params": params})
            return FakeSlackResponse(*state["reply"])

    monkeypatch.setattr(aiohttp, "ClientSession", FakeSession)
    return state


class TestSlackIntegration:
    def test_not_configured(self):
        slack = SlackIntegration()
        assert slack.is_configured is False
        assert slack.get_status()["configured"] is False

    @pytest.mark.asyncio
    async def test_connection_test_never_raises(self):
        assert (await SlackIntegration().test_connection())["success"] is False

    def test_env_defaults(self):
        env = {"SLACK_BOT_TOKEN": "xoxb-env", "SLACK_DEFAULT_CHANNEL": "#sales"}
        with patch.dict("os.environ", env, clear=False):
            slack = SlackIntegration()
        assert slack.is_configured
        assert slack.default_channel == "#sales"

    @pytest.mark.asyncio
    async def test_post_message(self, slack_api):
        slack_api["reply"] = (200, {"ok": True, "channel": "C1", "ts": "123.4"})
        result = await SlackIntegration("xoxb-1", "#deals").post_message("hello")
        assert result == {"channel": "C1", "ts": "123.4"}
        call = slack_api["calls"][0]
        assert call["url"].endswith("/chat.postMessage")
        assert call["json"] == {"channel": "#deals", "text": "hello"}
        assert call["headers"]["Authorization"] == "Bearer xoxb-1"

    @pytest.mark.asyncio
    async def test_ok_false_raises(self, slack_api):
        slack_api["reply"] = (200, {"ok": False, "error": "channel_not_found"})
        with pytest.raises(SlackAPIError) as exc:
            await SlackIntegration("xoxb-1").post_message("hi", "#nope")
        assert exc.value.details["slack_error"] == "channel_not_found"

    @pytest.mark.asyncio
    async def test_http_error_raises(self, slack_api):
        slack_api["reply"] = (500, {"ok": False})
        with pytest.raises(SlackAPIError) as exc:
            await SlackIntegration("xoxb-1").list_channels()
        assert exc.value.status_code == 500

    @pytest.mark.asyncio
    async def test_no_channel(self):
        with pytest.raises(SlackAPIError):
            await SlackIntegration("xoxb-1").post_message("hello")

    @pytest.mark.asyncio
    async def test_unknown_notification_type(self):
        with pytest.raises(ValueError):
            await SlackIntegration("xoxb-1", "#deals").notify("birthday", "cake")

    @pytest.mark.asyncio
    async def test_users_skip_bots_and_deleted(self, slack_api):
        slack_api["reply"] = (200, {"ok": True, "members": [
            {"id": "U1", "real_name": "Riley", "profile": {"email": "r@peak.test"}},
            {"id": "U2", "name": "bot", "is_bot": True},
            {"id": "U3", "name": "gone", "deleted": True},
        ]})
        users = await SlackIntegration("xoxb-1").list_users()
        assert users == [{"id": "U1", "name": "Riley", "email": "r@peak.test"}]

    @pytest.mark.asyncio
    async def test_stage_change_text(self):
        slack = SlackIntegration("xoxb-1", "#deals")
        with patch.object(SlackIntegration, "_request", new=AsyncMock(return_value={"ok": True})) as request:
            await slack.notify_stage_change(
                {"name": "Acme", "deal_value": 12500}, "prospecting", "engaging",
            )
        body = request.await_args.args[2]
        assert body["channel"] == "#deals"
        assert "*Acme* moved from Prospecting to Engaging" in body["text"]
        assert "$12,500" in body["text"]

    @pytest.mark.asyncio
    async def test_deal_closed_text(self):
        slack = SlackIntegration("xoxb-1", "#deals")
        with patch.object(SlackIntegration, "_request", new=AsyncMock(return_value={"ok": True})) as request:
            await slack.notify_deal_closed({"name": "Acme", "status": "lost", "deal_value": 0})
        assert ":x: *Acme* lost ($0)" in request.await_args.args[2]["text"]


# ─── Connections ────────────────────────────────────────────

class TestConnections:
    def test_redact(self):
        connection = {"credentials": {"api_token": "secret", "tenant_id": "t", "client_secret": ""}}
        assert redact(connection)["credentials"] == {
            "api_token": "********", "tenant_id": "t", "client_secret": "",
        }
        assert redact(None) is None

    def test_save_upserts_and_redacts(self, fake_db):
        saved = save_connection("org-1", "slack", {"bot_token": "xoxb-1"}, {"default_channel": "#deals"})
        assert saved["credentials"]["bot_token"] == "********"
        save_connection("org-1", "slack", {"bot_token": "xoxb-2"})

        rows = fake_db.rows("integration_connections")
        assert len(rows) == 1
        assert rows[0]["credentials"]["bot_token"] == "xoxb-2"

    def test_unknown_provider(self, fake_db):
        with pytest.raises(ValueError):
            save_connection("org-1", "hubspot", {})

    def test_clients_use_stored_credentials(self, fake_db):
        save_connection("org-1", "slack", {"bot_token": "xoxb-1"}, {"default_channel": "#deals"})
        save_connection("org-1", "sharepoint", {"tenant_id": "t", "client_id": "c", "client_secret": "s"},
                        {"site_id": "site-9"})

        slack = slack_client_for("org-1")
        assert slack.bot_token == "xoxb-1"
        assert slack.default_channel == "#deals"
        sharepoint = sharepoint_client_for("org-1")
        assert sharepoint.is_configured
        assert sharepoint.site_id == "site-9"

    def test_env_fallback_only_for_default_org(self, fake_db, monkeypatch):
        monkeypatch.setenv("MONDAY_API_TOKEN", "env-token")
        monkeypatch.setenv("SLACK_BOT_TOKEN", "xoxb-env")
        monkeypatch.setenv("DEFAULT_INTEGRATION_ORG_ID", "org-1")

        assert monday_client_for("org-1").api_token == "env-token"
        assert slack_client_for("org-1").is_configured

        assert monday_client_for("org-2").is_configured is False
        assert slack_client_for("org-2").is_configured is False
        assert sharepoint_client_for("org-2").is_configured is False

    def test_env_ignored_without_default_org(self, fake_db, monkeypatch):
        monkeypatch.setenv("MONDAY_API_TOKEN", "env-token")
        assert monday_client_for("org-1").is_configured is False

    def test_other_org_gets_503_not_operator_account(self, api, monkeypatch):
        monkeypatch.setenv("MONDAY_API_TOKEN", "env-token")
        monkeypatch.setenv("DEFAULT_INTEGRATION_ORG_ID", "org-1")
        with patch.object(MondayClient, "get_boards", return_value=[{"id": "1"}]) as boards:
            resp = api.get("/api/integrations/monday/boards", headers=auth("other"))
        assert resp.status_code == 503
        boards.assert_not_called()

    def test_inactive_connection_ignored(self, fake_db):
        fake_db.add("integration_connections", {
            "organization_id": "org-1", "integration_type": "monday",
            "credentials": {"api_token": "old"}, "status": "disabled",
        })
        assert monday_client_for("org-1").is_configured is False

    @pytest.mark.asyncio
    async def test_notification_skipped_without_channel(self, fake_db):
        save_connection("org-1", "slack", {"bot_token": "xoxb-1"})
        with patch.object(SlackIntegration, "notify_stage_change", new=AsyncMock()) as notify:
            await notify_stage_change("org-1", {"id": "o1"}, "prospecting", "engaging")
        notify.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_notification_failure_swallowed(self, fake_db):
        save_connection("org-1", "slack", {"bot_token": "xoxb-1"}, {"default_channel": "#deals"})
        failing = AsyncMock(side_effect=SlackAPIError("boom"))
        with patch.object(SlackIntegration, "notify_stage_change", new=failing):
            await notify_stage_change("org-1", {"id": "o1"}, "prospecting", "engaging")
        failing.assert_awaited_once()


# ─── Router ─────────────────────────────────────────────────

class TestIntegrationsAPI:
    def test_save_connection_admin_only(self, api):
        payload = {"bot_token": "xoxb-1", "default_channel": "#deals"}
        assert api.put("/api/integrations/slack/connection", headers=auth("rep"), json=payload).status_code == 403

        resp = api.put("/api/integrations/slack/connection", headers=auth("admin"), json=payload)
        assert resp.status_code == 200
        body = resp.json()
        assert body["credentials"] == {"bot_token": "********"}
        assert body["settings"] == {"default_channel": "#deals"}

    def test_connection_validation(self, api):
        assert api.put("/api/integrations/slack/connection", headers=auth("admin"), json={}).status_code == 422
        assert api.put("/api/integrations/zoom/connection", headers=auth("admin"),
                       json={"token": "x"}).status_code == 404

    def test_status(self, api):
        api.put("/api/integrations/monday/connection", headers=auth("admin"), json={"api_token": "tok"})
        body = api.get("/api/integrations", headers=auth("rep")).json()
        assert body["monday"]["configured"] is True
        assert body["slack"]["configured"] is False
        assert [c["credentials"]["api_token"] for c in body["connections"]] == ["********"]

    def test_delete_connection(self, api, fake_db):
        api.put("/api/integrations/monday/connection", headers=auth("admin"), json={"api_token": "tok"})
        assert api.delete("/api/integrations/monday/connection", headers=auth("admin")).status_code == 200
        assert fake_db.rows("integration_connections") == []
        assert api.delete("/api/integrations/monday/connection", headers=auth("admin")).status_code == 404

    def test_unconfigured_is_503(self, api):
        resp = api.get("/api/integrations/monday/boards", headers=auth("rep"))
        assert resp.status_code == 503
        assert resp.json()["detail"]["code"] == "INTEGRATION_NOT_CONFIGURED"
        assert api.get("/api/integrations/slack/channels", headers=auth("rep")).status_code == 503

    def test_test_endpoint_unconfigured(self, api):
        body = api.post("/api/integrations/monday/test", headers=auth("rep")).json()
        assert body["success"] is False

    def test_vendor_error_is_502(self, api):
        api.put("/api/integrations/monday/connection", headers=auth("admin"), json={"api_token": "tok"})
        with patch.object(MondayClient, "get_workspaces", side_effect=MondayAPIError("down", status_code=500)):
            resp = api.get("/api/integrations/monday/workspaces", headers=auth("rep"))
        assert resp.status_code == 502
        assert resp.json()["detail"]["code"] == "MONDAY_ERROR"

    def test_webhook_challenge_is_public(self, api):
        resp = api.post("/api/integrations/monday/webhook", json={"challenge": "abc123"})
        assert resp.status_code == 200
        assert resp.json() == {"challenge": "abc123"}

    def test_webhook_event(self, api):
        resp = api.post("/api/integrations/monday/webhook",
                        json={"event": {"type": "create_item", "boardId": 1, "pulseId": 2}})
        assert resp.json() == {"received": True}

    def test_webhook_rejects_non_object(self, api):
        resp = api.post("/api/integrations/monday/webhook", json=[{"challenge": "abc123"}])
        assert resp.status_code == 400

    def test_webhook_tolerates_odd_event(self, api):
        resp = api.post("/api/integrations/monday/webhook", json={"event": "create_item"})
        assert resp.json() == {"received": True}

    def test_sync_opportunity_creates_item(self, api, fake_db, seed_opportunity):
        opportunity = seed_opportunity(name="Acme", deal_value=5000)
        api.put("/api/integrations/monday/connection", headers=auth("admin"), json={
            "api_token": "tok", "board_id": "42", "column_map": {"deal_value": "numbers"},
        })
        with patch.object(MondayClient, "create_item", return_value={"id": "item-9"}) as create:
            resp = api.post(f"/api/integrations/monday/opportunities/{opportunity['id']}/sync", headers=auth("rep"))

        assert resp.status_code == 200
        assert resp.json()["created"] is True
        create.assert_called_once_with("42", "Acme", column_values={"numbers": 5000})
        assert fake_db.rows("opportunities")[0]["monday_item_id"] == "item-9"

    def test_sync_needs_board(self, api, seed_opportunity):
        opportunity = seed_opportunity()
        resp = api.post(f"/api/integrations/monday/opportunities/{opportunity['id']}/sync", headers=auth("rep"))
        assert resp.status_code == 409

    def test_upload_needs_folders(self, api, seed_opportunity):
        opportunity = seed_opportunity()
        resp = api.post(
            f"/api/integrations/sharepoint/opportunities/{opportunity['id']}/documents",
            headers=auth("rep"),
            data={"stage": "prospecting"},
            files={"file": ("deck.pdf", b"%PDF", "application/pdf")},
        )
        assert resp.status_code == 409

    def test_opportunity_documents_grouped(self, api, fake_db, seed_opportunity):
        opportunity = seed_opportunity()
        fake_db.add("opportunity_documents", {
            "organization_id": "org-1", "opportunity_id": opportunity["id"],
            "stage_name": "engaging", "document_name": "proposal.docx",
        })
        body = api.get(f"/api/integrations/sharepoint/opportunities/{opportunity['id']}/documents",
                       headers=auth("rep")).json()
        assert body["count"] == 1
        assert set(body["stages"]) == set(STAGES)
        assert [d["document_name"] for d in body["stages"]["engaging"]] == ["proposal.docx"]
