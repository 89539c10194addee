import json
import plistlib
import threading
import urllib.error
import urllib.request
from unittest.mock import patch

import httpx

from betblocker.config import Config
from betblocker.signing import SigningResult
from betblocker.webapp import BetBlockerHandler, make_server


class _FakeNextDNS:
    """In-memory stand-in for the NextDNS API, served through httpx.MockTransport."""

    def __init__(self):
        self.denylist: list[dict] = [{"id": "existing.com", "active": True}]
        self.requests: list[httpx.Request] = []
        self.fail_status: int | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_status:
            return httpx.Response(self.fail_status, json={"message": "upstream says no"})
        path = request.url.path
        if request.method == "POST" and path == "/profiles":
            return httpx.Response(200, json={"data": {"id": "new123"}})
        if request.method == "GET" and path.endswith("/denylist"):
            return httpx.Response(200, json={"data": self.denylist})
        if request.method == "POST" and path.endswith("/denylist"):
            self.denylist.append(json.loads(request.content))
            return httpx.Response(200, json={"data": {}})
        if request.method == "DELETE" and "/denylist/" in path:
            domain = path.rsplit("/", 1)[1]
            self.denylist = [e for e in self.denylist if e["id"] != domain]
            return httpx.Response(204)
        return httpx.Response(404, json={"error": "unknown route"})


def _start_test_server(config=None, upstream=None):
    """Start the web app on a random port for testing."""
    if config is None:
        config = Config(api_key="test-key")
    upstream = upstream or _FakeNextDNS()
    server = make_server(config, host="127.0.0.1", port=0, transport=httpx.MockTransport(upstream))
    port = server.server_address[1]
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server, port, upstream


def _request(port, method, path, body=None, raw=None):
    """Make an HTTP request; returns (status, headers, body bytes)."""
    url = f"http://127.0.0.1:{port}{path}"
    data = raw if raw is not None else (json.dumps(body).encode() if body is not None else None)
    req = urllib.request.Request(url, data=data, method=method)
    if data is not None:
        req.add_header("Content-Type", "application/json")
    try:
        with urllib.request.urlopen(req, timeout=5) as resp:
            return resp.status, resp.headers, resp.read()
    except urllib.error.HTTPError as e:
        return e.code, e.headers, e.read()


def _json(port, method, path, body=None, raw=None):
    status, headers, content = _request(port, method, path, body=body, raw=raw)
    return status, json.loads(content)


class _ServerTest:
    config = None

    def setup_method(self):
        self.server, self.port, self.upstream = _start_test_server(config=self.config)

    def teardown_method(self):
        self.server.shutdown()
        self.server.server_close()


class TestPages(_ServerTest):
    def test_index_html(self):
        status, headers, body = _request(self.port, "GET", "/")
        assert status == 200
        assert "text/html" in headers["Content-Type"]
        html = body.decode()
        assert "BetBlocker" in html
        assert "/profile-document" in html
        assert "/blocklist" in html
        assert 'href="/setup-guide"' in html
        assert "navigator.clipboard" in html
        assert "self-block-btn" in html

    def test_setup_guide(self):
        status, headers, body = _request(self.port, "GET", "/setup-guide")
        assert status == 200
        assert "text/html" in headers["Content-Type"]
        html = body.decode()
        assert "Screen Time" in html
        assert "Don't Allow" in html
        assert html.count('data-step="') == 5
        assert 'href="/"' in html

    def test_health_hides_secrets(self):
        status, data = _json(self.port, "GET", "/health")
        assert status == 200
        assert data == {
            "status": "ok",
            "hasApiKey": True,
            "hasProfileId": False,
            "signingConfigured": False,
        }
        assert "test-key" not in json.dumps(data)

    def test_unknown_path(self):
        status, data = _json(self.port, "GET", "/nope")
        assert status == 404
        assert data["error"] == "Not found"

    def test_handler_wired(self):
        assert BetBlockerHandler.config.api_key == "test-key"


class TestBlocklistRoutes(_ServerTest):
    def test_list(self):
        status, data = _json(self.port, "GET", "/blocklist?profileId=p1")
        assert status == 200
        assert data == {"denylist": [{"host": "existing.com", "active": True}]}
        assert self.upstream.requests[0].url.path == "/profiles/p1/denylist"

    def test_list_requires_profile_id(self):
        status, data = _json(self.port, "GET", "/blocklist")
        assert status == 400
        assert "profileId" in data["error"]
        assert self.upstream.requests == []

    def test_add_normalizes(self):
        status, data = _json(self.port, "POST", "/blocklist?profileId=p1",
                             body={"domain": "https://www.BetSite.com/path?x=1"})
        assert status == 200
        assert data["message"] == "Domain betsite.com added to blocklist."
        assert {"id": "betsite.com", "active": True} in self.upstream.denylist

    def test_add_missing_domain(self):
        status, data = _json(self.port, "POST", "/blocklist?profileId=p1", body={})
        assert status == 400
        assert "domain" in data["error"]
        assert self.upstream.requests == []

    def test_add_invalid_json(self):
        status, data = _json(self.port, "POST", "/blocklist?profileId=p1", raw=b"{not json")
        assert status == 400
        assert data["error"] == "Invalid JSON body"

    def test_add_non_object_json(self):
        status, data = _json(self.port, "POST", "/blocklist?profileId=p1", raw=b'["betsite.com"]')
        assert status == 400

    def test_remove(self):
        status, data = _json(self.port, "DELETE", "/blocklist?profileId=p1", body={"domain": "existing.com"})
        assert status == 200
        assert data["message"] == "Domain existing.com removed from blocklist."
        assert self.upstream.denylist == []

    def test_upstream_error_status_is_forwarded(self):
        self.upstream.fail_status = 403
        status, data = _json(self.port, "GET", "/blocklist?profileId=p1")
        assert status == 403
        assert data["error"] == "upstream says no"


class TestMissingApiKey(_ServerTest):
    config = Config()

    def test_list_reports_missing_key(self):
        status, data = _json(self.port, "GET", "/blocklist?profileId=p1")
        assert status == 500
        assert "NEXTDNS_API_KEY" in data["error"]
        assert self.upstream.requests == []

    def test_create_profile_reports_missing_key(self):
        status, data = _json(self.port, "POST", "/profile", body={})
        assert status == 500
        assert "NEXTDNS_API_KEY" in data["error"]


class TestProfileRoute(_ServerTest):
    def test_create(self):
        status, data = _json(self.port, "POST", "/profile", body={"label": "my phone"})
        assert status == 200
        assert data == {"profileId": "new123", "name": "my phone"}


class TestDefaultProfileId(_ServerTest):
    config = Config(api_key="test-key", profile_id="fixed1", removal_password="partner-pw")

    def test_blocklist_uses_default(self):
        status, _ = _json(self.port, "GET", "/blocklist")
        assert status == 200
        assert self.upstream.requests[0].url.path == "/profiles/fixed1/denylist"

    def test_document_uses_default_id_and_password(self):
        status, headers, body = _request(self.port, "GET", "/profile-document")
        assert status == 200
        assert 'filename="betblocker-fixed1.mobileconfig"' in headers["Content-Disposition"]
        plist = plistlib.loads(body)
        assert plist["PayloadContent"][0]["DNSSettings"]["ServerURL"] == "https://dns.nextdns.io/fixed1"
        assert "partner-pw" in plist["ConsentText"]["default"]

    def test_other_profile_does_not_get_configured_password(self):
        status, _, body = _request(self.port, "GET", "/profile-document?profileId=someoneelse")
        assert status == 200
        assert b"partner-pw" not in body
        plist = plistlib.loads(body)
        assert len(plist["PayloadContent"]) == 1

    def test_explicit_password_wins_over_configured(self):
        status, _, body = _request(self.port, "GET", "/profile-document?profileId=fixed1&password=own-pw")
        assert status == 200
        assert b"partner-pw" not in body
        assert plistlib.loads(body)["PayloadContent"][1]["RemovalPassword"] == "own-pw"


class TestProfileDocumentRoute(_ServerTest):
    def test_unsigned_document(self):
        status, headers, body = _request(self.port, "GET", "/profile-document?profileId=abc/def;rm")
        assert status == 200
        assert headers["Content-Type"] == "application/x-apple-aspen-config; charset=utf-8"
        assert headers["X-Profile-Signed"] == "false"
        assert 'filename="betblocker-abcdefrm.mobileconfig"' in headers["Content-Disposition"]
        plist = plistlib.loads(body)
        assert plist["PayloadDisplayName"] == "BetBlocker DNS (abcdefrm)"

    def test_password_query_parameter(self):
        status, _, body = _request(self.port, "GET", "/profile-document?profileId=abc123&password=secret99")
        assert status == 200
        plist = plistlib.loads(body)
        assert "secret99" in plist["ConsentText"]["default"]
        assert plist["PayloadContent"][1]["RemovalPassword"] == "secret99"

    def test_signed_document(self):
        with patch.object(BetBlockerHandler.signer, "sign",
                          return_value=SigningResult(content=b"\x30\x80DER", signed=True)):
            status, headers, body = _request(self.port, "GET", "/profile-document?profileId=abc123")
        assert status == 200
        assert headers["Content-Type"] == "application/x-apple-aspen-config"
        assert headers["X-Profile-Signed"] == "true"
        assert body == b"\x30\x80DER"

    def test_missing_profile_id(self):
        status, data = _json(self.port, "GET", "/profile-document")
        assert status == 500
        assert "NEXTDNS_PROFILE_ID" in data["error"]

    def test_unusable_profile_id(self):
        status, data = _json(self.port, "GET", "/profile-document?profileId=%2F%3B")
        assert status == 400

    def test_password_with_control_character_rejected(self):
        status, data = _json(self.port, "GET", "/profile-document?profileId=abc123&password=pa%01ss")
        assert status == 400
        assert "password" in data["error"].lower()
