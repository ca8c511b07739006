from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from conftest import make_issue, make_stats
from threadline.errors import IssueNotFoundError
from threadline.schemas.issue import ThreadMessageRecord

TRACKER_TOKEN = "tracker-secret"
DASHBOARD_TOKEN = "dashboard-secret"


class TestHealthEndpoint:
    """Test health endpoint."""

    def test_health_check(self, client: TestClient):
        """Test basic health check."""
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "ai_enabled" in data


class TestToolEndpoints:
    """Test the tool transport."""

    @pytest.fixture(autouse=True)
    def tracker_env(self, monkeypatch):
        monkeypatch.setenv("TRACKER_TOKEN", TRACKER_TOKEN)

    @property
    def auth(self) -> dict:
        return {"Authorization": f"Bearer {TRACKER_TOKEN}"}

    def test_not_configured(self, client: TestClient, monkeypatch):
        """Test a missing secret is 503, not open access."""
        monkeypatch.delenv("TRACKER_TOKEN")
        response = client.post("/tools/list", headers=self.auth)
        assert response.status_code == 503

    @pytest.mark.parametrize("header", [None, "Bearer wrong", "Basic tracker-secret"])
    def test_bad_token(self, client: TestClient, header):
        """Test missing or wrong credentials are 401."""
        headers = {"Authorization": header} if header else {}
        response = client.post("/tools/list", headers=headers)
        assert response.status_code == 401

    def test_list_tools(self, client: TestClient):
        """Test declared tools and input bounds."""
        response = client.post("/tools/list", headers=self.auth)
        assert response.status_code == 200
        tools = {t["name"]: t for t in response.json()["tools"]}
        assert set(tools) == {"track_tell", "track_ask", "track_get", "track_find", "track_query"}
        assert tools["track_tell"]["inputSchema"]["properties"]["message"]["maxLength"] == 10000
        assert tools["track_ask"]["inputSchema"]["properties"]["question"]["maxLength"] == 2000
        assert tools["track_get"]["inputSchema"]["properties"]["id"]["maxLength"] == 20

    def test_call_tell(self, client: TestClient, mock_tracker: MagicMock):
        """Test tell results come back as text content."""
        response = client.post(
            "/tools/call",
            headers=self.auth,
            json={"name": "track_tell", "arguments": {"message": "Add rate limiting", "issue_id": "wi_test0001"}},
        )
        assert response.status_code == 200
        assert response.json() == {"content": [{"type": "text", "text": 'Created wi_test0001: "Test issue"'}]}
        mock_tracker.tell.assert_awaited_once_with("Add rate limiting", "wi_test0001")

    def test_call_ask_get_find(self, client: TestClient, mock_tracker: MagicMock):
        """Test ask, get and find dispatch."""
        client.post("/tools/call", headers=self.auth, json={"name": "track_ask", "arguments": {"question": "What?"}})
        client.post("/tools/call", headers=self.auth, json={"name": "track_get", "arguments": {"id": "wi_missing"}})
        client.post("/tools/call", headers=self.auth, json={"name": "track_find", "arguments": {"message": "limits"}})
        mock_tracker.ask.assert_awaited_once_with("What?")
        mock_tracker.get.assert_awaited_once_with("wi_missing")
        mock_tracker.find.assert_awaited_once_with("limits", 5)

    def test_call_query_returns_json_text(self, client: TestClient, mock_tracker: MagicMock):
        """Test query filters are passed through and results serialized."""
        response = client.post(
            "/tools/call",
            headers=self.auth,
            json={"name": "track_query", "arguments": {"status": ["open", "active"], "search": "auth"}},
        )
        assert response.status_code == 200
        assert '"count": 0' in response.json()["content"][0]["text"]
        filters, search = mock_tracker.query.call_args.args
        assert filters.status == ["open", "active"]
        assert search == "auth"

    @pytest.mark.parametrize(
        "name, arguments",
        [
            ("track_tell", {"message": "x" * 10001}),
            ("track_tell", {"message": "ok", "issue_id": "wi_" + "x" * 30}),
            ("track_ask", {"question": "x" * 2001}),
            ("track_get", {}),
            ("track_query", {"status": "pending"}),
        ],
    )
    def test_invalid_arguments(self, client: TestClient, mock_tracker: MagicMock, name: str, arguments: dict):
        """Test input bounds are enforced before any work."""
        response = client.post("/tools/call", headers=self.auth, json={"name": name, "arguments": arguments})
        assert response.status_code == 400
        mock_tracker.tell.assert_not_called()

    def test_unknown_tool(self, client: TestClient):
        response = client.post("/tools/call", headers=self.auth, json={"name": "track_delete", "arguments": {}})
        assert response.status_code == 404


class TestDashboardAuth:
    """Test session cookie login and route protection."""

    @pytest.fixture(autouse=True)
    def dashboard_env(self, monkeypatch):
        monkeypatch.setenv("DASHBOARD_TOKEN", DASHBOARD_TOKEN)

    def test_login_sets_cookie(self, client: TestClient, monkeypatch):
        monkeypatch.delenv("ENVIRONMENT", raising=False)
        response = client.post("/api/auth", json={"token": DASHBOARD_TOKEN})
        assert response.status_code == 200
        assert response.json() == {"ok": True}
        cookie = response.headers["set-cookie"]
        assert "threadline_session=" in cookie
        assert "HttpOnly" in cookie
        assert "Secure" not in cookie

    def test_login_cookie_secure_in_production(self, client: TestClient, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "production")
        response = client.post("/api/auth", json={"token": DASHBOARD_TOKEN})
        assert response.status_code == 200
        assert "Secure" in response.headers["set-cookie"]

    def test_login_wrong_token(self, client: TestClient):
        assert client.post("/api/auth", json={"token": "nope"}).status_code == 401
        assert client.post("/api/auth", json={"token": 42}).status_code == 401

    def test_login_bad_body(self, client: TestClient):
        response = client.post("/api/auth", content="not json", headers={"content-type": "application/json"})
        assert response.status_code == 400

    def test_login_not_configured(self, client: TestClient, monkeypatch):
        monkeypatch.delenv("DASHBOARD_TOKEN")
        assert client.post("/api/auth", json={"token": DASHBOARD_TOKEN}).status_code == 503

    def test_logout_clears_cookie(self, client: TestClient):
        response = client.delete("/api/auth")
        assert response.status_code == 200
        assert 'threadline_session=""' in response.headers["set-cookie"]

    def test_dashboard_redirects_without_session(self, client: TestClient):
        response = client.get("/api/issues", follow_redirects=False)
        assert response.status_code == 307
        assert response.headers["location"] == "/login"

    def test_dashboard_not_configured(self, client: TestClient, monkeypatch):
        monkeypatch.delenv("DASHBOARD_TOKEN")
        client.cookies.set("threadline_session", DASHBOARD_TOKEN)
        assert client.get("/api/issues", follow_redirects=False).status_code == 503

    def test_login_page_is_public(self, client: TestClient):
        response = client.get("/login")
        assert response.status_code == 200
        assert "Dashboard token" in response.text


class TestDashboardIssues:
    """Test dashboard issue routes."""

    @pytest.fixture(autouse=True)
    def session(self, client: TestClient, monkeypatch):
        monkeypatch.setenv("DASHBOARD_TOKEN", DASHBOARD_TOKEN)
        client.cookies.set("threadline_session", DASHBOARD_TOKEN)

    def test_list_grouped(self, client: TestClient, mock_store: MagicMock):
        """Test issues are grouped by status with thread stats."""
        mock_store.list_by_status_grouping.return_value = [
            make_issue("wi_actv0001", status="active"),
            make_issue("wi_open0001", status="open"),
        ]
        mock_store.thread_stats_batch.return_value = {"wi_actv0001": make_stats(3, 400)}

        response = client.get("/api/issues")

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 2
        assert [i["id"] for i in data["groups"]["active"]] == ["wi_actv0001"]
        assert data["groups"]["active"][0]["thread"] == {"message_count": 3, "total_chars": 400}
        assert data["groups"]["open"][0]["thread"] == {"message_count": 0, "total_chars": 0}
        assert data["groups"]["done"] == []

    def test_get_issue(self, client: TestClient, mock_store: MagicMock):
        issue = make_issue()
        mock_store.get.return_value = issue
        mock_store.list_messages.return_value = [
            ThreadMessageRecord(id=1, issue_id=issue.id, timestamp=issue.created_at, role="user", content="hi")
        ]
        response = client.get(f"/api/issues/{issue.id}")
        assert response.status_code == 200
        assert response.json()["thread"][0]["content"] == "hi"

    def test_get_issue_not_found(self, client: TestClient):
        response = client.get("/api/issues/wi_missing0")
        assert response.status_code == 404
        assert response.json()["detail"] == "Issue not found: wi_missing0"

    def test_update_status(self, client: TestClient, mock_store: MagicMock):
        response = client.post("/api/issues/wi_test0001/status", json={"status": "archived"})
        assert response.status_code == 200
        mock_store.set_status.assert_awaited_once_with("wi_test0001", "archived")

    def test_update_status_invalid(self, client: TestClient, mock_store: MagicMock):
        response = client.post("/api/issues/wi_test0001/status", json={"status": "closed"})
        assert response.status_code == 400
        mock_store.set_status.assert_not_called()

    def test_update_status_unknown_issue(self, client: TestClient, mock_store: MagicMock):
        mock_store.set_status.side_effect = IssueNotFoundError("wi_missing0")
        response = client.post("/api/issues/wi_missing0/status", json={"status": "done"})
        assert response.status_code == 404

    def test_tell(self, client: TestClient, mock_tracker: MagicMock):
        response = client.post("/api/issues/tell", json={"message": "Add rate limiting"})
        assert response.status_code == 200
        assert response.json()["result"].startswith("Created wi_test0001")
        mock_tracker.tell.assert_awaited_once_with("Add rate limiting", None)

    def test_active_issues(self, client: TestClient, mock_store: MagicMock):
        """Test the active listing is served before the issue-id route."""
        mock_store.list_non_done.return_value = [make_issue("wi_actv0001", status="active")]
        response = client.get("/api/issues/active")
        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        assert data["issues"][0]["id"] == "wi_actv0001"
        assert data["issues"][0]["updated_at"] == "2025-01-15T12:00:00+00:00"
        mock_store.get.assert_not_called()

    def test_search(self, client: TestClient, mock_tracker: MagicMock):
        mock_tracker.search.return_value = {"count": 1, "issues": [{"id": "wi_test0001", "similarity": 91}]}
        response = client.get("/api/issues/search", params={"q": "rate limits", "limit": 3})
        assert response.status_code == 200
        assert response.json()["issues"][0]["similarity"] == 91
        mock_tracker.search.assert_awaited_once_with("rate limits", 3)

    def test_search_requires_query(self, client: TestClient, mock_tracker: MagicMock):
        assert client.get("/api/issues/search").status_code == 422
        mock_tracker.search.assert_not_called()
