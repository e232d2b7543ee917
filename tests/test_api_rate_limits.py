"""Rate limiting through the HTTP stack: headers, 429 bodies and deferred counting."""

from dataclasses import replace

from conftest import TEST_PASSWORD
from promptvault.service.runtime import get_runtime


def _login(client, identifier="alice", password=TEST_PASSWORD):
    return client.post(
        "/api/auth/login", json={"identifier": identifier, "password": password}
    )


class TestGlobalPolicy:
    def test_headers_on_every_api_response(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "1000"
        assert response.headers["X-RateLimit-Remaining"] == "999"
        assert int(response.headers["X-RateLimit-Reset"]) > 0

    def test_global_limit_returns_429_body(self, client, configure):
        configure(RATE_LIMIT_GLOBAL_MAX=3)
        for _ in range(3):
            assert client.get("/api/health").status_code == 200

        denied = client.get("/api/health")
        assert denied.status_code == 429
        assert denied.json() == {
            "success": False,
            "message": "Too many API requests from this IP, please try again later",
            "retryAfter": int(denied.headers["Retry-After"]),
        }
        assert denied.headers["X-RateLimit-Remaining"] == "0"
        assert denied.headers["X-RateLimit-Limit"] == "3"

    def test_non_api_paths_are_not_limited(self, client, configure):
        configure(RATE_LIMIT_GLOBAL_MAX=1)
        for _ in range(3):
            response = client.get("/openapi.json")
            assert response.status_code == 200
            assert "X-RateLimit-Limit" not in response.headers

    def test_disabled_rate_limiting_sends_no_headers(self, client, configure):
        configure(RATE_LIMIT_ENABLED="false")
        response = client.get("/api/health")
        assert response.status_code == 200
        assert "X-RateLimit-Limit" not in response.headers


class TestAuthPolicy:
    def test_auth_endpoints_share_a_tight_ip_limit(self, client, register, configure):
        configure(RATE_LIMIT_AUTH_MAX=2)
        register()
        first = _login(client, password="wrong-password")
        assert first.status_code == 401
        assert first.headers["X-RateLimit-Limit"] == "2"

        denied = _login(client)
        assert denied.status_code == 429
        assert denied.json()["message"] == (
            "Too many authentication attempts, please try again later"
        )
        assert denied.headers["X-RateLimit-Limit"] == "2"

    def test_route_headers_take_precedence_over_global(self, client, register):
        register()
        response = _login(client)
        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "3"

    def test_skip_successful_requests_counts_only_failures(self, client, register, configure):
        configure(RATE_LIMIT_AUTH_MAX=2)
        runtime = get_runtime()
        policies = runtime.rate_limit_policies
        policies["auth"] = replace(policies["auth"], skip_successful_requests=True)

        register()
        for _ in range(4):
            assert _login(client).status_code == 200
        assert _login(client, password="wrong-password").status_code == 401
        assert _login(client, password="wrong-password").status_code == 401
        assert _login(client).status_code == 429

    def test_skip_failed_requests_ignores_errors(self, client, register, configure):
        configure(RATE_LIMIT_AUTH_MAX=2, LOGIN_MAX_ATTEMPTS=100)
        policies = get_runtime().rate_limit_policies
        policies["auth"] = replace(policies["auth"], skip_failed_requests=True)

        for _ in range(4):
            assert _login(client, "nobody", "wrong-password").status_code == 401
        register()
        assert _login(client).status_code == 200
        assert _login(client).status_code == 429


class TestPrincipalPolicies:
    def test_social_limit_is_per_user(self, client, register, configure):
        configure(RATE_LIMIT_SOCIAL_MAX=2, RATE_LIMIT_AUTH_MAX=100)
        _, alice = register("alice")
        _, bob = register("bob")
        prompt = client.post(
            "/api/prompts", json={"title": "t", "body": "b"}, headers=alice
        ).json()["data"]
        like_url = f"/api/prompts/{prompt['id']}/like"

        assert client.post(like_url, headers=alice).status_code == 200
        assert client.post(like_url, headers=alice).status_code == 200
        denied = client.post(like_url, headers=alice)
        assert denied.status_code == 429
        assert denied.json()["message"] == "Too many social actions, please slow down"

        assert client.post(like_url, headers=bob).status_code == 200

    def test_creation_limit(self, client, register, configure):
        configure(RATE_LIMIT_CREATION_MAX=1)
        _, headers = register()
        ok = client.post("/api/prompts", json={"title": "a", "body": "b"}, headers=headers)
        assert ok.status_code == 201
        denied = client.post("/api/prompts", json={"title": "c", "body": "d"}, headers=headers)
        assert denied.status_code == 429
        assert denied.json()["message"] == "Creation limit exceeded, please try again later"


class TestAdminReset:
    def _admin_headers(self, client):
        runtime = get_runtime()
        admin = runtime.store.create_user("root@example.com", "root", role="admin")
        runtime.auth.save_password(admin.id, TEST_PASSWORD)
        token = _login(client, "root").json()["data"]["access_token"]
        return {"Authorization": f"Bearer {token}"}

    def test_admin_can_lift_a_lockout(self, client, configure):
        configure(RATE_LIMIT_AUTH_MAX=2)
        admin = self._admin_headers(client)
        assert _login(client, "root", "wrong-password").status_code == 401
        assert _login(client, "root").status_code == 429

        response = client.post(
            "/api/admin/rate-limits/reset", json={"principal": "testclient"}, headers=admin
        )
        assert response.status_code == 200
        assert response.json()["data"]["deleted"] >= 2
        assert _login(client, "root").status_code == 200

    def test_non_admin_forbidden(self, client, register):
        _, headers = register()
        response = client.post(
            "/api/admin/rate-limits/reset", json={"principal": "x"}, headers=headers
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"


class TestDegradedStore:
    def test_requests_flow_when_kvs_is_down(self, client, configure, down_kvs):
        configure(kvs=down_kvs)
        for _ in range(3):
            response = client.get("/api/health")
            assert response.status_code == 200
        assert response.json()["data"]["status"] == "degraded"
        assert response.json()["data"]["kvs"] == "unavailable"
