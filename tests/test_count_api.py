import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch
from uuid import UUID, uuid4

import httpx
import sqlalchemy as sa

from sinsuan import create_app
from sinsuan.routes import parse_count_url
from sinsuan.storage import ProvisioningError


class CountApiTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.db_file = Path(tempfile.gettempdir()) / f"sinsuan-api-{uuid4().hex}.db"
        cls.app = create_app(
            {
                "TESTING": True,
                "SQLALCHEMY_DATABASE_URI": f"sqlite:///{cls.db_file.as_posix()}",
                "QQ_MAP_KEY": "",
                "QQ_MAP_SK": "",
                "GEO_RESOLVE_WORKERS": 0,
            }
        )
        cls.counter = cls.app.extensions["sinsuan"]

    @classmethod
    def tearDownClass(cls):
        cls.counter.shutdown()
        if cls.db_file.exists():
            try:
                cls.db_file.unlink()
            except PermissionError:
                pass

    def setUp(self):
        self.client = self.app.test_client()

    def _visit(self, url, visitor_id=None, **headers):
        if url is not None:
            headers["X-Sinsuan-Count-Url"] = url
        if visitor_id is not None:
            headers["X-Sinsuan-Id"] = visitor_id
        return self.client.get("/count", headers=headers)

    def test_visit_returns_counts_including_itself(self):
        response = self._visit("https://blog.example.com/posts/1?ref=feed#comments", "visitor-1")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.get_json(),
            {"sin_suan_id": "visitor-1", "pv": 1, "uv": 1, "site_pv": 1, "site_uv": 1},
        )

        data = self._visit("https://blog.example.com/posts/1", "visitor-1").get_json()
        self.assertEqual((data["pv"], data["uv"], data["site_pv"], data["site_uv"]), (2, 1, 2, 1))

        data = self._visit("https://blog.example.com/about", "visitor-2").get_json()
        self.assertEqual((data["pv"], data["uv"], data["site_pv"], data["site_uv"]), (1, 1, 3, 2))

    def test_new_visitor_gets_an_id(self):
        data = self._visit("https://new.example.com/").get_json()
        self.assertEqual(str(UUID(data["sin_suan_id"])), data["sin_suan_id"])

        blank = self._visit("https://new.example.com/", "   ").get_json()
        self.assertNotEqual(blank["sin_suan_id"].strip(), "")
        self.assertNotEqual(blank["sin_suan_id"], data["sin_suan_id"])

    def test_referer_is_used_without_count_url(self):
        response = self.client.get("/count", headers={"Referer": "https://referred.example.com/page"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["pv"], 1)

    def test_missing_count_url_is_rejected(self):
        response = self._visit(None)
        self.assertEqual(response.status_code, 400)
        self.assertFalse(response.get_json()["ok"])

    def test_invalid_count_url_is_rejected(self):
        self.assertEqual(self._visit("not a url").status_code, 400)
        self.assertEqual(self._visit("ftp://files.example.com/a").status_code, 400)

    def test_client_ip_is_recorded_and_resolved(self):
        with patch.object(self.counter.geo, "submit") as submit:
            self._visit("https://ip.example.com/", "visitor-ip", **{"X-Real-IP": "203.0.113.9"})
            self._visit("https://ip.example.com/", "visitor-ip", **{"X-Forwarded-For": "198.51.100.4, 10.0.0.1"})
            self._visit("https://ip.example.com/", "visitor-ip")

        self.assertEqual(
            [call.args[0] for call in submit.call_args_list],
            ["203.0.113.9", "198.51.100.4", "127.0.0.1"],
        )
        with self.counter.store.lend() as conn:
            ips = [row[0] for row in conn.execute(sa.text("SELECT ip FROM visit_record_ip_example_com ORDER BY id"))]
        self.assertEqual(ips, ["203.0.113.9", "198.51.100.4", "127.0.0.1"])

    def test_provisioning_failure_returns_no_data(self):
        with patch("sinsuan.visits.ensure_ready", side_effect=ProvisioningError("read-only")):
            response = self._visit("https://readonly.example.com/", "visitor-1")
        self.assertEqual(response.status_code, 404)
        self.assertFalse(response.get_json()["ok"])

    def test_cors_headers_echo_origin(self):
        response = self._visit("https://cors.example.com/", "visitor-1", Origin="https://cors.example.com")
        self.assertEqual(response.headers["Access-Control-Allow-Origin"], "https://cors.example.com")
        self.assertEqual(response.headers["Access-Control-Allow-Methods"], "GET, OPTIONS")
        self.assertEqual(
            response.headers["Access-Control-Allow-Headers"],
            "Content-Type,X-Sinsuan-Count-Url,X-Sinsuan-Id",
        )
        self.assertEqual(response.headers["Access-Control-Allow-Credentials"], "true")

    def test_preflight(self):
        response = self.client.options("/count")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers["Access-Control-Allow-Origin"], "*")


class GeoFailureTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.db_file = Path(tempfile.gettempdir()) / f"sinsuan-geo-down-{uuid4().hex}.db"
        cls.app = create_app(
            {
                "TESTING": True,
                "SQLALCHEMY_DATABASE_URI": f"sqlite:///{cls.db_file.as_posix()}",
                "QQ_MAP_KEY": "k",
                "QQ_MAP_SK": "s",
                "QQ_MAP_BASE_URL": "https://apis.map.qq.com:badport",
                "GEO_RESOLVE_WORKERS": 0,
            }
        )
        cls.counter = cls.app.extensions["sinsuan"]

    @classmethod
    def tearDownClass(cls):
        cls.counter.shutdown()
        if cls.db_file.exists():
            try:
                cls.db_file.unlink()
            except PermissionError:
                pass

    def _assert_first_visit_counted(self, counts):
        self.assertIsNotNone(counts)
        self.assertEqual((counts.pv, counts.uv, counts.site_pv, counts.site_uv), (1, 1, 1, 1))

    def test_malformed_provider_url_still_counts(self):
        counts = self.counter.handle_visit("bad-url.example.com", "/", "u1", "203.0.113.77")
        self._assert_first_visit_counted(counts)

    def test_unreachable_provider_still_counts(self):
        with patch("sinsuan.geo.httpx.get", side_effect=httpx.ConnectError("connection refused")):
            counts = self.counter.handle_visit("geo-down.example.com", "/", "u1", "203.0.113.78")
        self._assert_first_visit_counted(counts)

    def test_location_cache_failure_still_counts(self):
        with patch("sinsuan.geo.find_location", side_effect=sa.exc.TimeoutError("pool exhausted")):
            counts = self.counter.handle_visit("cache-down.example.com", "/", "u1", "203.0.113.79")
        self._assert_first_visit_counted(counts)

    def test_unexpected_lookup_error_still_counts(self):
        with patch.object(self.counter.geo, "resolve_and_cache", side_effect=RuntimeError("boom")):
            counts = self.counter.handle_visit("geo-crash.example.com", "/", "u1", "203.0.113.80")
        self._assert_first_visit_counted(counts)

    def test_lookup_runs_without_a_borrowed_connection(self):
        pool = self.counter.store.engine.pool
        checked_out = []

        def fake_get(*args, **kwargs):
            checked_out.append(pool.checkedout())
            raise httpx.ConnectError("connection refused")

        with patch("sinsuan.geo.httpx.get", side_effect=fake_get):
            counts = self.counter.handle_visit("pool-free.example.com", "/", "u1", "203.0.113.81")

        self._assert_first_visit_counted(counts)
        self.assertEqual(checked_out, [0])

    def test_failed_lookup_is_served_over_http(self):
        response = self.app.test_client().get(
            "/count",
            headers={"X-Sinsuan-Count-Url": "https://http-geo-down.example.com/", "X-Real-IP": "203.0.113.82"},
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["pv"], 1)


class ParseCountUrlTestCase(unittest.TestCase):
    def test_host_and_path(self):
        self.assertEqual(parse_count_url("https://Blog.Example.com/a/b?x=1"), ("blog.example.com", "/a/b"))

    def test_empty_path_is_root(self):
        self.assertEqual(parse_count_url("https://example.com"), ("example.com", "/"))

    def test_rejects_garbage(self):
        self.assertIsNone(parse_count_url(None))
        self.assertIsNone(parse_count_url(""))
        self.assertIsNone(parse_count_url("/relative/path"))
        self.assertIsNone(parse_count_url("http://[::1"))


if __name__ == "__main__":
    unittest.main()
