import os
import tempfile
import unittest
from unittest.mock import MagicMock, patch

from fastapi.testclient import TestClient

from unraid_bff.app import create_app
from unraid_bff.audit import AuditLog
from unraid_bff.config import Settings
from unraid_bff.dependencies import (
    get_audit_log,
    get_client_factory,
    get_secret_store,
    get_write_rate_limiter,
)
from unraid_bff.secret_store import SecretStore
from unraid_bff.security import WriteRateLimiter
from unraid_bff.unraid_client import UpstreamError

SERVER = {"baseUrl": "https://Tower.local/", "apiKey": "secret-key", "name": "Tower"}


class BffApiTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = SecretStore(self.tmp.name, encryption_key="0123456789abcdef0123456789")
        self.audit = AuditLog(self.tmp.name)
        self.limiter = WriteRateLimiter(limit=20, window_seconds=60)

        self.upstream = MagicMock()
        self.upstream.__enter__.return_value = self.upstream
        self.upstream.__exit__.return_value = False
        self.upstream.resolve_server_name.return_value = None
        self.factory_calls = []

        self.client = self._make_client()

        self.client.get("/health")
        self.csrf = {"x-csrf-token": self.client.cookies.get("unpwa_csrf")}

    def tearDown(self):
        self.tmp.cleanup()

    def _make_client(self, settings=None, **client_kwargs):
        def factory(base_url, api_key, trust_self_signed):
            self.factory_calls.append((base_url, api_key, trust_self_signed))
            return self.upstream

        if settings is None:
            app = create_app()
        else:
            with patch("unraid_bff.app.get_settings", return_value=settings):
                app = create_app()
        app.dependency_overrides[get_secret_store] = lambda: self.store
        app.dependency_overrides[get_audit_log] = lambda: self.audit
        app.dependency_overrides[get_write_rate_limiter] = lambda: self.limiter
        app.dependency_overrides[get_client_factory] = lambda: factory
        return TestClient(app, **client_kwargs)

    def _add_server(self, **overrides):
        response = self.client.post("/api/servers", json={**SERVER, **overrides}, headers=self.csrf)
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()["serverId"]

    # ------------------------------------------------------------------
    # Basics
    # ------------------------------------------------------------------

    def test_health_issues_csrf_cookie(self):
        response = TestClient(self.client.app).get("/health")
        self.assertEqual(response.json(), {"ok": True, "service": "unraid-pwa-bff"})
        self.assertIn("unpwa_csrf", response.cookies)

    def test_mutation_requires_csrf_header(self):
        response = self.client.post("/api/servers", json=SERVER)
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json(), {"error": "CSRF validation failed."})

        response = self.client.post("/api/servers", json=SERVER, headers={"x-csrf-token": "forged"})
        self.assertEqual(response.status_code, 403)

    def test_validation_errors_are_field_specific(self):
        response = self.client.post(
            "/api/servers", json={**SERVER, "baseUrl": "ftp://tower"}, headers=self.csrf
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "baseUrl must be an http(s) URL"})

        response = self.client.post(
            "/api/servers", json={"baseUrl": "http://tower"}, headers=self.csrf
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "apiKey is required"})

    # ------------------------------------------------------------------
    # Servers
    # ------------------------------------------------------------------

    def test_create_list_and_status(self):
        self.assertEqual(self.client.get("/api/servers/status").json(), {"configured": False})

        server_id = self._add_server()
        self.assertEqual(self.store.load_active().base_url, "https://tower.local")

        listing = self.client.get("/api/servers").json()
        self.assertEqual(listing["activeServerId"], server_id)
        self.assertEqual(listing["servers"][0]["name"], "Tower")
        self.assertNotIn("apiKey", listing["servers"][0])

        status = self.client.get("/api/servers/status").json()
        self.assertTrue(status["configured"])
        self.assertTrue(status["canWrite"])
        self.assertNotIn("apiKey", status)

    def test_create_without_name_asks_upstream(self):
        self.upstream.resolve_server_name.return_value = "nas"
        self._add_server(name="")
        self.assertEqual(self.store.load_active().name, "nas")

    def test_new_server_becomes_active(self):
        first = self._add_server()
        second = self._add_server(name="Backup")
        self.assertNotEqual(first, second)
        self.assertEqual(self.store.load_active().id, second)

    def test_update_with_blank_name_keeps_name(self):
        server_id = self._add_server()
        response = self.client.put(
            f"/api/servers/{server_id}", json={"name": "   "}, headers=self.csrf
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.store.load_by_id(server_id).name, "Tower")

    def test_update_requires_a_field_and_known_id(self):
        server_id = self._add_server()
        response = self.client.put(f"/api/servers/{server_id}", json={}, headers=self.csrf)
        self.assertEqual(response.status_code, 400)

        response = self.client.put("/api/servers/unknown", json={"name": "x"}, headers=self.csrf)
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {"error": "Server not found"})

    def test_delete_active_promotes_remaining(self):
        first = self._add_server()
        second = self._add_server(name="Backup")
        response = self.client.delete(f"/api/servers/{second}", headers=self.csrf)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.client.get("/api/servers").json()["activeServerId"], first)

    def test_activate(self):
        first = self._add_server()
        self._add_server(name="Backup")
        response = self.client.post(f"/api/servers/{first}/activate", headers=self.csrf)
        self.assertEqual(response.json(), {"ok": True})
        self.assertEqual(self.store.load_active().id, first)

    def test_connection_test_maps_failures_to_502(self):
        self.upstream.test_connection.side_effect = UpstreamError("Unable to reach")
        response = self.client.post(
            "/api/servers/test", json={"baseUrl": "http://tower", "apiKey": "k"}
        )
        self.assertEqual(response.status_code, 502)
        self.assertEqual(
            response.json(), {"error": "Connection test failed", "detail": "Unable to reach"}
        )

    def test_key_test_uses_stored_server(self):
        server_id = self._add_server(trustSelfSigned=False)
        self.upstream.test_connection.return_value = {
            "ok": True,
            "scopes": ["read:monitoring"],
            "missingScopes": [],
            "canWrite": True,
        }
        response = self.client.post(
            f"/api/servers/{server_id}/test-key", json={"apiKey": "new-key"}
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.factory_calls[-1], ("https://tower.local", "new-key", False))

    def test_corrupt_store_is_a_server_error(self):
        with open(self.store.data_file, "w", encoding="utf-8") as handle:
            handle.write("garbage")
        response = self.client.get("/api/servers")
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["error"], "Credential store unavailable")

    def test_unusable_key_file_is_a_json_error(self):
        data_dir = os.path.join(self.tmp.name, "keyless")
        os.makedirs(data_dir)
        open(os.path.join(data_dir, "encryption.key"), "w").close()
        self.store = SecretStore(data_dir)
        with patch("unraid_bff.crypto.time.sleep"):
            response = self.client.post("/api/servers", json=SERVER, headers=self.csrf)
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["error"], "Credential store unavailable")

    def test_unexpected_errors_return_json(self):
        client = self._make_client(raise_server_exceptions=False)
        with patch.object(self.store, "list_all", side_effect=RuntimeError("disk on fire")):
            response = client.get("/api/servers")
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.headers["content-type"], "application/json")
        self.assertEqual(
            response.json(), {"error": "Internal server error", "detail": "disk on fire"}
        )

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def test_app_settings(self):
        self.assertEqual(
            self.client.get("/api/settings/app").json(),
            {"themeMode": "dark", "accentColor": "#ea580c"},
        )
        response = self.client.put(
            "/api/settings/app", json={"themeMode": "light", "accentColor": "#ABC"}, headers=self.csrf
        )
        self.assertEqual(response.json(), {"themeMode": "light", "accentColor": "#aabbcc"})

        response = self.client.put("/api/settings/app", json={"themeMode": "neon"}, headers=self.csrf)
        self.assertEqual(response.status_code, 400)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def test_reads_require_configured_server(self):
        response = self.client.get("/api/overview")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {"error": "Server not configured"})

    def test_read_success_and_failure(self):
        self._add_server()
        self.upstream.fetch_vms.return_value = {"summary": {}, "vms": []}
        self.assertEqual(self.client.get("/api/vms").json(), {"summary": {}, "vms": []})

        self.upstream.fetch_overview.side_effect = UpstreamError("boom")
        response = self.client.get("/api/overview")
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json(), {"error": "Overview fetch failed", "detail": "boom"})

    def test_docker_icon(self):
        self._add_server()
        self.upstream.fetch_docker_icon.return_value = (b"PNG", "image/png")
        response = self.client.get("/api/docker/c1/icon")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.content, b"PNG")
        self.assertEqual(response.headers["cache-control"], "public, max-age=300")

        self.upstream.fetch_docker_icon.return_value = None
        self.assertEqual(self.client.get("/api/docker/c1/icon").status_code, 404)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def test_container_action_is_audited(self):
        self._add_server()
        response = self.client.post("/api/docker/c1/start", headers=self.csrf)
        self.assertEqual(response.json(), {"ok": True})
        self.upstream.run_container_action.assert_called_once_with("c1", "start")
        entry = self.audit.entries()[-1]
        self.assertEqual(
            (entry["action"], entry["target"], entry["result"]), ("docker:start", "c1", "ok")
        )

    def test_restart_attempts_start_after_failed_stop(self):
        self._add_server()

        def action(container_id, step):
            if step == "stop":
                raise UpstreamError("stop failed")

        self.upstream.run_container_action.side_effect = action
        response = self.client.post("/api/docker/c1/restart", headers=self.csrf)
        self.assertEqual(response.status_code, 500)
        self.assertEqual(
            response.json(), {"error": "Container action failed", "detail": "stop failed"}
        )
        results = [(entry["action"], entry["result"]) for entry in self.audit.entries()]
        self.assertEqual(
            results, [("docker:restart:stop", "failed"), ("docker:restart:start", "ok")]
        )

    def test_unsupported_action(self):
        self._add_server()
        response = self.client.post("/api/vms/vm1/explode", headers=self.csrf)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "Unsupported action"})

    def test_vm_array_and_notification_actions(self):
        self._add_server()
        self.assertEqual(self.client.post("/api/vms/vm1/pause", headers=self.csrf).status_code, 200)
        self.assertEqual(self.client.post("/api/array/stop", headers=self.csrf).status_code, 200)
        self.assertEqual(
            self.client.post("/api/notifications/n1/archive", headers=self.csrf).status_code, 200
        )
        self.upstream.run_vm_action.assert_called_once_with("vm1", "pause")
        self.upstream.run_array_action.assert_called_once_with("stop")
        self.upstream.archive_notification.assert_called_once_with("n1")
        actions = [entry["action"] for entry in self.audit.entries()]
        self.assertEqual(actions, ["vm:pause", "array:stop", "notification:archive"])

    def test_read_only_key_cannot_write(self):
        self._add_server(requestedScopes=["read:docker", "read:vms"])
        response = self.client.post("/api/docker/c1/stop", headers=self.csrf)
        self.assertEqual(response.status_code, 403)
        self.upstream.run_container_action.assert_not_called()

    def test_write_rate_limit(self):
        self._add_server()
        self.limiter.limit = 2
        statuses = [
            self.client.post("/api/array/start", headers=self.csrf).status_code for _ in range(3)
        ]
        self.assertEqual(statuses, [200, 200, 429])

    def test_forwarded_address_keys_rate_limit_behind_proxy(self):
        self._add_server()
        self.limiter.limit = 1
        client = self._make_client(Settings(trust_proxy=True))
        client.get("/health")
        csrf = {"x-csrf-token": client.cookies.get("unpwa_csrf")}

        def start_array(address):
            headers = {**csrf, "x-forwarded-for": address}
            return client.post("/api/array/start", headers=headers).status_code

        statuses = [start_array("10.0.0.1"), start_array("10.0.0.2"), start_array("10.0.0.1")]
        self.assertEqual(statuses, [200, 200, 429])


class WriteRateLimiterTests(unittest.TestCase):
    def test_window_resets(self):
        now = [0.0]
        limiter = WriteRateLimiter(limit=1, window_seconds=60, clock=lambda: now[0])
        self.assertTrue(limiter.allow("a"))
        self.assertFalse(limiter.allow("a"))
        self.assertTrue(limiter.allow("b"))
        now[0] = 61.0
        self.assertTrue(limiter.allow("a"))


if __name__ == "__main__":
    unittest.main()
