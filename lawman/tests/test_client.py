"""
Tests for the API client
========================

The server side is an httpx.MockTransport; cooldown state lives in memory
unless a test gives it a file.
"""

from datetime import timedelta

import httpx
import pytest

from lawman.client import ApiError, CasePoller, LawmanClient
from lawman.clock import utcnow
from lawman.config import Settings
from lawman.cooldown import CooldownActive, FileCooldownStore, NotificationCooldownGuard


def envelope(status, code, message="failed"):
    return httpx.Response(status, json={"error": {"code": code, "message": message, "details": None}})


class Server:
    """Routes requests to per-path handlers and records every call."""

    def __init__(self, routes):
        self.routes = routes
        self.calls = []

    def __call__(self, request):
        self.calls.append((request.method, request.url.path, request.headers.get("Authorization")))
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return envelope(404, "not_found")
        return handler(request)

    def count(self, path):
        return sum(1 for _, p, _ in self.calls if p == path)


def make_client(server):
    return LawmanClient(
        "http://lawman.test",
        cooldown=NotificationCooldownGuard(),
        transport=httpx.MockTransport(server),
    )


NOTIFICATIONS = "/api/customers/C1/notifications"


class TestCustomerNotifications:

    def test_success(self):
        server = Server({("GET", NOTIFICATIONS): lambda r: httpx.Response(200, json=[{"kind": "deadline_soon"}])})
        client = make_client(server)

        assert client.customer_notifications("C1") == [{"kind": "deadline_soon"}]
        assert client.customer_notifications("C1") == [{"kind": "deadline_soon"}]
        assert server.count(NOTIFICATIONS) == 2

    def test_not_found_cools_down_for_a_day(self):
        server = Server({})
        client = make_client(server)

        first = client.customer_notifications("C1")
        second = client.customer_notifications("C1")

        assert isinstance(first, CooldownActive)
        assert first.permanent is True
        assert isinstance(second, CooldownActive)
        assert server.count(NOTIFICATIONS) == 1

    def test_server_error_uses_short_cooldown(self):
        server = Server({("GET", NOTIFICATIONS): lambda r: envelope(500, "internal_error")})
        client = make_client(server)

        marker = client.customer_notifications("C1")

        assert isinstance(marker, CooldownActive)
        assert marker.permanent is False
        assert isinstance(client.customer_notifications("C1"), CooldownActive)
        assert server.count(NOTIFICATIONS) == 1

    def test_network_failure_uses_short_cooldown(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(Server({("GET", NOTIFICATIONS): refuse}))
        marker = client.customer_notifications("C1")
        assert marker.permanent is False

    def test_other_customers_unaffected(self):
        server = Server({("GET", "/api/customers/C2/notifications"): lambda r: httpx.Response(200, json=[])})
        client = make_client(server)

        client.customer_notifications("C1")
        assert client.customer_notifications("C2") == []

    def test_expired_token_refreshes_before_classifying(self):
        def notifications(request):
            if request.headers.get("Authorization") == "Bearer old":
                return envelope(401, "token_expired")
            return httpx.Response(200, json=[{"kind": "deadline_soon"}])

        server = Server({
            ("GET", NOTIFICATIONS): notifications,
            ("POST", "/api/refresh"): lambda r: httpx.Response(200, json={"access_token": "new", "user": {}}),
        })
        client = make_client(server)
        client.access_token = "old"

        assert client.customer_notifications("C1") == [{"kind": "deadline_soon"}]
        assert server.count("/api/refresh") == 1
        assert client.cooldown.active_cooldown("customer-notifications:C1") is None

    def test_forbidden_is_raised_not_cooled_down(self):
        server = Server({("GET", NOTIFICATIONS): lambda r: envelope(403, "forbidden")})
        client = make_client(server)

        with pytest.raises(ApiError) as exc_info:
            client.customer_notifications("C1")

        assert exc_info.value.code == "forbidden"
        assert client.cooldown.active_cooldown("customer-notifications:C1") is None

    def test_transient_failure_keeps_stored_not_found_window(self, tmp_path):
        store = FileCooldownStore(tmp_path / "cooldowns.json")
        key = "customer-notifications:C1"

        def notifications(request):
            # Another process recorded a not-found while this call was in flight
            store.set(key, utcnow() + timedelta(hours=24))
            return envelope(500, "internal_error")

        server = Server({("GET", NOTIFICATIONS): notifications})
        client = LawmanClient(
            "http://lawman.test",
            cooldown=NotificationCooldownGuard(store=store),
            transport=httpx.MockTransport(server),
        )

        marker = client.customer_notifications("C1")

        assert isinstance(marker, CooldownActive)
        assert marker.permanent is True
        assert marker.until > utcnow() + timedelta(hours=23)

    def test_not_found_survives_client_restart(self, tmp_path):
        settings = Settings(notification_cooldown_file=str(tmp_path / "cooldowns.json"))
        server = Server({})

        first = LawmanClient("http://lawman.test", settings=settings, transport=httpx.MockTransport(server))
        assert first.customer_notifications("C1").permanent is True
        first.close()

        second = LawmanClient("http://lawman.test", settings=settings, transport=httpx.MockTransport(server))
        marker = second.customer_notifications("C1")

        assert isinstance(marker, CooldownActive)
        assert marker.permanent is True
        assert server.count(NOTIFICATIONS) == 1


class TestSession:

    def test_login_sets_bearer(self):
        server = Server({
            ("POST", "/api/login"): lambda r: httpx.Response(200, json={"access_token": "tok-1", "user": {}}),
            ("GET", "/api/kpis"): lambda r: httpx.Response(200, json={"totalCases": 0}),
        })
        client = make_client(server)

        client.login("kejdi", "pw")
        client.kpis()

        assert server.calls[-1][2] == "Bearer tok-1"

    def test_expired_token_refreshes_once_and_retries(self):
        def kpis(request):
            if request.headers.get("Authorization") == "Bearer old":
                return envelope(401, "token_expired")
            return httpx.Response(200, json={"totalCases": 3})

        server = Server({
            ("GET", "/api/kpis"): kpis,
            ("POST", "/api/refresh"): lambda r: httpx.Response(200, json={"access_token": "new", "user": {}}),
        })
        client = make_client(server)
        client.access_token = "old"

        assert client.kpis() == {"totalCases": 3}
        assert client.access_token == "new"
        assert server.count("/api/refresh") == 1

    def test_invalid_token_is_not_retried(self):
        server = Server({("GET", "/api/kpis"): lambda r: envelope(401, "invalid_token")})
        client = make_client(server)
        client.access_token = "bad"

        with pytest.raises(ApiError) as exc_info:
            client.kpis()

        assert exc_info.value.code == "invalid_token"
        assert server.count("/api/refresh") == 0

    def test_error_envelope_is_raised(self):
        server = Server({
            ("POST", "/api/cases/CS1/transitions"): lambda r: envelope(409, "illegal_transition", "nope"),
        })
        with pytest.raises(ApiError) as exc_info:
            make_client(server).transition("CS1", "SEND_CONTRACT")

        assert exc_info.value.status_code == 409
        assert exc_info.value.code == "illegal_transition"


class TestCasePoller:

    def test_refresh_applies_result(self):
        server = Server({("GET", "/api/cases"): lambda r: httpx.Response(200, json=[{"case_id": "CS1"}])})
        poller = CasePoller(make_client(server), stage="ACTIONABLE")

        assert poller.refresh() is True
        assert poller.cases == [{"case_id": "CS1"}]

    def test_superseded_result_is_dropped(self):
        poller = None

        def cases(request):
            # Filters change while this fetch is in flight
            poller.set_filters(stage="AWAITING")
            return httpx.Response(200, json=[{"case_id": "stale"}])

        poller = CasePoller(make_client(Server({("GET", "/api/cases"): cases})), stage="ACTIONABLE")

        assert poller.refresh() is False
        assert poller.cases == []
        assert poller.filters == {"stage": "AWAITING"}
