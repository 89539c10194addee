import json
import logging
from http.server import BaseHTTPRequestHandler, HTTPServer
from socketserver import ThreadingMixIn
from urllib.parse import parse_qs, urlparse

from betblocker.config import Config
from betblocker.denylist import DenylistClient
from betblocker.errors import BetBlockerError
from betblocker.mobileconfig import ProfileBuilder, profile_filename
from betblocker.provisioner import ProfileProvisioner
from betblocker.signing import ProfileSigner

logger = logging.getLogger("betblocker.webapp")

MOBILECONFIG_CONTENT_TYPE = "application/x-apple-aspen-config"


class BetBlockerHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the BetBlocker web app.

    Handlers are stateless; the components below are configured once by
    make_server() and only read afterwards.
    """

    config: Config = None
    denylist: DenylistClient = None
    provisioner: ProfileProvisioner = None
    builder: ProfileBuilder = None
    signer: ProfileSigner = None

    def do_GET(self):
        path, params = self._parse_path()
        routes = {
            "/": self._serve_html,
            "/setup-guide": self._serve_setup_guide,
            "/health": self._serve_health,
            "/profile-document": self._serve_profile_document,
            "/blocklist": self._handle_blocklist_list,
        }
        self._dispatch(routes.get(path), params)

    def do_POST(self):
        path, params = self._parse_path()
        routes = {
            "/blocklist": self._handle_blocklist_add,
            "/profile": self._handle_profile_create,
        }
        self._dispatch(routes.get(path), params)

    def do_DELETE(self):
        path, params = self._parse_path()
        routes = {
            "/blocklist": self._handle_blocklist_remove,
        }
        self._dispatch(routes.get(path), params)

    def _parse_path(self) -> tuple[str, dict]:
        parsed = urlparse(self.path)
        return parsed.path.rstrip("/") or "/", parse_qs(parsed.query)

    def _dispatch(self, handler, params: dict) -> None:
        if handler is None:
            self._json_response({"error": "Not found"}, status=404)
            return
        try:
            handler(params)
        except BetBlockerError as e:
            self._json_response({"error": e.message}, status=e.status)

    # --- Request helpers ---

    def _read_json_body(self) -> dict | None:
        """Read and parse JSON request body. Returns None and sends 400 on failure."""
        try:
            length = int(self.headers.get("Content-Length", 0))
            raw = self.rfile.read(length) if length > 0 else b"{}"
            body = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError, ValueError):
            self._json_response({"error": "Invalid JSON body"}, status=400)
            return None
        if not isinstance(body, dict):
            self._json_response({"error": "JSON body must be an object"}, status=400)
            return None
        return body

    def _profile_id(self, params: dict) -> str:
        return params.get("profileId", [""])[0] or self.config.profile_id

    def _json_response(self, data: dict | list, status: int = 200) -> None:
        body = json.dumps(data).encode()
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    # --- GET handlers ---

    def _serve_html(self, params: dict) -> None:
        self._html_response(INDEX_HTML)

    def _serve_setup_guide(self, params: dict) -> None:
        self._html_response(SETUP_GUIDE_HTML)

    def _html_response(self, html: str) -> None:
        body = html.encode()
        self.send_response(200)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _serve_health(self, params: dict) -> None:
        self._json_response({
            "status": "ok",
            "hasApiKey": bool(self.config.api_key),
            "hasProfileId": bool(self.config.profile_id),
            "signingConfigured": self.config.signing_configured,
        })

    def _serve_profile_document(self, params: dict) -> None:
        profile_id = self._profile_id(params)
        password = params.get("password", [""])[0]
        # The operator's password only goes into their own profile
        if not password and profile_id == self.config.profile_id:
            password = self.config.removal_password
        document = self.builder.build(profile_id, password or None)
        result = self.signer.sign(document.encode("utf-8"))

        content_type = MOBILECONFIG_CONTENT_TYPE
        if not result.signed:
            content_type += "; charset=utf-8"
        self.send_response(200)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Disposition", f'attachment; filename="{profile_filename(profile_id)}"')
        self.send_header("Content-Length", str(len(result.content)))
        self.send_header("X-Profile-Signed", "true" if result.signed else "false")
        self.send_header("Cache-Control", "no-store")
        self.end_headers()
        self.wfile.write(result.content)

    def _handle_blocklist_list(self, params: dict) -> None:
        entries = self.denylist.list(self._profile_id(params))
        self._json_response({"denylist": [e.to_dict() for e in entries]})

    # --- POST / DELETE handlers ---

    def _handle_blocklist_add(self, params: dict) -> None:
        body = self._read_json_body()
        if body is None:
            return
        message = self.denylist.add(self._profile_id(params), body.get("domain"))
        self._json_response({"message": message})

    def _handle_blocklist_remove(self, params: dict) -> None:
        body = self._read_json_body()
        if body is None:
            return
        message = self.denylist.remove(self._profile_id(params), body.get("domain"))
        self._json_response({"message": message})

    def _handle_profile_create(self, params: dict) -> None:
        body = self._read_json_body()
        if body is None:
            return
        profile = self.provisioner.create(body.get("label"))
        self._json_response(profile.to_dict())

    def log_message(self, format, *args):
        logger.debug("%s %s", self.address_string(), format % args)


class _ThreadedHTTPServer(ThreadingMixIn, HTTPServer):
    """HTTPServer that handles each request in a new thread."""
    daemon_threads = True


def make_server(config: Config, host: str | None = None, port: int | None = None, transport=None) -> HTTPServer:
    """Wire the components to the handler and bind the server (not yet serving)."""
    BetBlockerHandler.config = config
    BetBlockerHandler.denylist = DenylistClient(config, transport=transport)
    BetBlockerHandler.provisioner = ProfileProvisioner(config, transport=transport)
    BetBlockerHandler.builder = ProfileBuilder(config)
    BetBlockerHandler.signer = ProfileSigner(config)

    address = (host or config.listen_address, config.listen_port if port is None else port)
    server = _ThreadedHTTPServer(address, BetBlockerHandler)
    logger.info("BetBlocker available at http://%s:%d", *server.server_address[:2])
    if not config.api_key:
        logger.warning("NEXTDNS_API_KEY is not set; blocklist and profile routes will fail")
    if not config.signing_configured:
        logger.info("Signing material not configured; profiles will be served unsigned")
    return server


INDEX_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>BetBlocker</title>
<style>
  * { box-sizing: border-box; }
  body { font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", sans-serif;
         background: #0f1115; color: #e6e6e6; margin: 0; padding: 24px; }
  main { max-width: 640px; margin: 0 auto; }
  h1 { font-size: 1.5rem; margin-bottom: 4px; }
  .card { background: #181b22; border-radius: 10px; padding: 16px; margin: 16px 0; }
  label { display: block; font-weight: 600; margin-bottom: 6px; }
  input { width: 100%; padding: 8px; border-radius: 6px; border: 1px solid #333;
          background: #0f1115; color: #e6e6e6; margin-bottom: 8px; }
  button { padding: 8px 14px; border-radius: 6px; border: 0; background: #3b82f6;
           color: white; cursor: pointer; margin: 4px 4px 4px 0; }
  button:disabled { opacity: 0.5; cursor: default; }
  button.danger { background: #b91c1c; }
  code { display: block; background: #0f1115; padding: 8px; border-radius: 6px;
         word-break: break-all; margin: 6px 0; }
  ul { list-style: none; padding: 0; }
  li { display: flex; justify-content: space-between; align-items: center;
       padding: 6px 0; border-bottom: 1px solid #262a33; }
  .error { color: #f87171; }
  .success { color: #4ade80; }
  .hidden { display: none; }
  .muted { color: #9ca3af; font-size: 0.9rem; }
  a { color: #60a5fa; }
</style>
</head>
<body>
<main>
  <h1>BetBlocker</h1>
  <p class="muted">Block gambling sites on your devices with a private NextDNS profile.</p>
  <p class="muted"><a href="/setup-guide">Complete protection setup guide</a></p>
  <p id="error" class="error"></p>
  <p id="success" class="success"></p>

  <section id="create-card" class="card">
    <label>Blocking profile</label>
    <p class="muted">This creates a dedicated NextDNS configuration and remembers it only in this browser.</p>
    <button id="create-btn">Create my profile</button>
  </section>

  <section id="profile-card" class="card hidden">
    <label>Connect this device</label>
    <p class="muted">Configuration ID (NextDNS app):</p>
    <code id="profile-id"></code>
    <button type="button" data-copy="profile-id" data-message="Configuration ID copied.">Copy configuration ID</button>
    <p class="muted">DNS-over-HTTPS address (iOS / macOS):</p>
    <code id="dns-https"></code>
    <button type="button" data-copy="dns-https" data-message="DNS address copied. Paste it into your DNS settings.">Copy iOS DNS address</button>
    <p class="muted">Private DNS hostname (Android):</p>
    <code id="dns-host"></code>
    <button type="button" data-copy="dns-host" data-message="DNS hostname copied. Paste it into Private DNS.">Copy Android DNS hostname</button>
    <label for="password">Removal password (optional)</label>
    <input id="password" type="password" autocomplete="new-password">
    <button id="download-btn">Download Apple profile</button>
  </section>

  <section id="list-card" class="card hidden">
    <form id="add-form">
      <label for="domain">Domain to block</label>
      <input id="domain" placeholder="betsite.com">
      <button type="submit">Block</button>
      <button type="button" id="refresh-btn">Refresh list</button>
      <button type="button" id="self-block-btn">Block this site (test)</button>
    </form>
    <ul id="denylist"></ul>
    <p class="muted">The test button blocks this app's own hostname. Reload after a minute: if the page no longer loads on this device, blocking works. Remove the entry to undo.</p>
  </section>
</main>
<script>
const STORAGE_KEY = "nextdnsProfileId";
let profileId = localStorage.getItem(STORAGE_KEY) || "";
const $ = (id) => document.getElementById(id);

function say(kind, text) {
  $("error").textContent = kind === "error" ? text : "";
  $("success").textContent = kind === "success" ? text : "";
}

async function api(method, path, body) {
  const opts = { method, headers: { "Content-Type": "application/json" } };
  if (body !== undefined) opts.body = JSON.stringify(body);
  const res = await fetch(path, opts);
  const data = await res.json().catch(() => ({}));
  if (!res.ok) throw new Error(data.error || "Request failed (" + res.status + ")");
  return data;
}

function render() {
  const has = Boolean(profileId);
  $("create-card").classList.toggle("hidden", has);
  $("profile-card").classList.toggle("hidden", !has);
  $("list-card").classList.toggle("hidden", !has);
  if (!has) return;
  $("profile-id").textContent = profileId;
  $("dns-https").textContent = "https://dns.nextdns.io/" + profileId;
  $("dns-host").textContent = profileId + ".dns.nextdns.io";
}

async function createProfile() {
  $("create-btn").disabled = true;
  try {
    const data = await api("POST", "/profile", {});
    profileId = data.profileId;
    localStorage.setItem(STORAGE_KEY, profileId);
    say("success", "Created a private blocking profile for you.");
    render();
    await loadList();
  } catch (e) {
    say("error", e.message);
  } finally {
    $("create-btn").disabled = false;
  }
}

async function loadList() {
  try {
    const data = await api("GET", "/blocklist?profileId=" + encodeURIComponent(profileId));
    const list = $("denylist");
    list.innerHTML = "";
    for (const entry of data.denylist) {
      const li = document.createElement("li");
      const name = document.createElement("span");
      name.textContent = entry.host;
      const btn = document.createElement("button");
      btn.className = "danger";
      btn.textContent = "Remove";
      btn.onclick = () => removeDomain(entry.host);
      li.append(name, btn);
      list.append(li);
    }
  } catch (e) {
    say("error", e.message);
  }
}

async function addDomain(event) {
  event.preventDefault();
  await blockDomain($("domain").value.trim());
}

async function blockDomain(domain) {
  if (!domain) { say("error", "Enter a domain to block."); return; }
  try {
    const data = await api("POST", "/blocklist?profileId=" + encodeURIComponent(profileId), { domain });
    say("success", data.message);
    $("domain").value = "";
    await loadList();
  } catch (e) {
    say("error", e.message);
  }
}

async function removeDomain(domain) {
  try {
    const data = await api("DELETE", "/blocklist?profileId=" + encodeURIComponent(profileId), { domain });
    say("success", data.message);
    await loadList();
  } catch (e) {
    say("error", e.message);
  }
}

async function copyText(id, message) {
  const value = $(id).textContent;
  if (!value || !navigator.clipboard) return;
  try {
    await navigator.clipboard.writeText(value);
    say("success", message);
  } catch (e) {
    say("error", "Could not copy to clipboard. Copy it manually from the text.");
  }
}

function selfBlock() {
  blockDomain(window.location.hostname || "localhost");
}

function downloadProfile() {
  const params = new URLSearchParams({ profileId });
  const password = $("password").value;
  if (password) params.set("password", password);
  window.location.href = "/profile-document?" + params.toString();
}

$("create-btn").onclick = createProfile;
$("add-form").onsubmit = addDomain;
$("refresh-btn").onclick = loadList;
$("download-btn").onclick = downloadProfile;
$("self-block-btn").onclick = selfBlock;
for (const btn of document.querySelectorAll("[data-copy]")) {
  btn.onclick = () => copyText(btn.dataset.copy, btn.dataset.message);
}
render();
if (profileId) loadList();
</script>
</body>
</html>
"""


SETUP_GUIDE_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>BetBlocker - Protection setup</title>
<style>
  * { box-sizing: border-box; }
  body { font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", sans-serif;
         background: #0f1115; color: #e6e6e6; margin: 0; padding: 24px; }
  main { max-width: 720px; margin: 0 auto; }
  h1 { font-size: 1.5rem; margin-bottom: 4px; }
  h2 { font-size: 1.15rem; margin: 4px 0 12px; }
  a { color: #60a5fa; }
  .card { background: #181b22; border-radius: 10px; padding: 16px; margin: 16px 0; }
  .step { color: #60a5fa; font-size: 0.8rem; font-weight: 700; text-transform: uppercase; }
  .box { border-radius: 6px; padding: 10px; margin: 10px 0; }
  .warning { background: #422006; }
  .critical { background: #450a0a; }
  .info { background: #172554; }
  .ok { background: #052e16; }
  .check { display: flex; gap: 8px; align-items: center; font-weight: 600; margin-top: 12px; }
  .progress { height: 8px; background: #262a33; border-radius: 4px; overflow: hidden; }
  .progress div { height: 100%; width: 0; background: #4ade80; transition: width 0.2s; }
  .hidden { display: none; }
  .muted { color: #9ca3af; font-size: 0.9rem; }
  details { margin: 8px 0; }
  summary { cursor: pointer; font-weight: 600; }
</style>
</head>
<body>
<main>
  <h1>Complete protection setup</h1>
  <p class="muted">Follow these steps to make the DNS profile hard to remove on impulse.
  Do this together with your accountability partner.</p>
  <p><a href="/">Back to BetBlocker</a></p>
  <div class="progress"><div id="progress"></div></div>

  <section class="card">
    <span class="step">Step 1</span>
    <h2>Install the DNS protection profile</h2>
    <ol>
      <li>Download the Apple profile from the BetBlocker home page.</li>
      <li>Open Settings, then Profile Downloaded.</li>
      <li>Tap Install and enter your device passcode.</li>
      <li>Confirm the installation.</li>
    </ol>
    <div class="box info"><strong>Verify:</strong> Settings, General, VPN &amp; Device Management
    lists a profile named "BetBlocker DNS".</div>
    <label class="check"><input type="checkbox" data-step="profileInstalled"> Profile installed and verified</label>
  </section>

  <section class="card">
    <span class="step">Step 2</span>
    <h2>Turn on Screen Time (with your partner)</h2>
    <div class="box warning"><strong>Important:</strong> your accountability partner should be
    with you. They will set and keep the Screen Time passcode.</div>
    <ol>
      <li>Open Settings and tap Screen Time.</li>
      <li>If it is off, tap Turn On Screen Time, then Continue.</li>
      <li>Choose This is My iPhone/iPad.</li>
    </ol>
    <label class="check"><input type="checkbox" data-step="screenTimeEnabled"> Screen Time is on</label>
  </section>

  <section class="card">
    <span class="step">Step 3</span>
    <h2>Partner sets the Screen Time passcode</h2>
    <div class="box critical"><strong>Critical:</strong> hand the device to your partner. They
    choose a passcode you do not know.</div>
    <ol>
      <li>In Screen Time, tap Use Screen Time Passcode.</li>
      <li>Enter a passcode the user does not know, twice.</li>
      <li>For passcode recovery, enter the partner's Apple ID, not the user's.</li>
    </ol>
    <div class="box warning"><strong>Partner:</strong> keep the passcode somewhere safe, such as
    a password manager, and do not share it with the user. If you also set a removal password
    when downloading the profile, keep that one too.</div>
    <label class="check"><input type="checkbox" data-step="passcodeWithPartner"> Partner set the passcode and stored it</label>
  </section>

  <section class="card">
    <span class="step">Step 4</span>
    <h2>Block profile removal</h2>
    <ol>
      <li>In Screen Time, open Content &amp; Privacy Restrictions and turn it on.</li>
      <li>Under Allow Changes, open Profile &amp; Device Management.</li>
      <li>Select Don't Allow.</li>
    </ol>
    <div class="box ok"><strong>Result:</strong> the DNS profile can no longer be removed without
    the passcode your partner holds.</div>
    <label class="check"><input type="checkbox" data-step="restrictionsSet"> Profile &amp; Device Management set to "Don't Allow"</label>
  </section>

  <section class="card">
    <span class="step">Step 5</span>
    <h2>Test the protection</h2>
    <ol>
      <li>Open Settings, General, VPN &amp; Device Management and tap the BetBlocker profile.</li>
      <li>Tap Remove Profile. You should be asked for the Screen Time passcode.</li>
      <li>Do not remove it. Tap Cancel.</li>
    </ol>
    <div class="box info"><strong>Also test:</strong> open a blocked site in Safari, or use
    "Block this site (test)" on the home page. The page should fail to load.</div>
    <label class="check"><input type="checkbox" data-step="tested"> Protection tested and working</label>
  </section>

  <section id="complete" class="card hidden">
    <h2>Setup complete</h2>
    <p>Blocked sites stay blocked on Wi-Fi and cellular, and the profile cannot be removed
    without your partner. Your partner can still add and remove sites from the web app.</p>
    <p>If you need to remove protection, talk to your partner first and consider waiting
    24 hours before deciding.</p>
  </section>

  <section class="card">
    <h2>Troubleshooting</h2>
    <details>
      <summary>No passcode prompt when removing the profile</summary>
      <p>Check step 4: Content &amp; Privacy Restrictions must be on and Profile &amp; Device
      Management must be set to Don't Allow.</p>
    </details>
    <details>
      <summary>Forgot the Screen Time passcode</summary>
      <p>Ask your partner, or use Apple ID recovery if the partner's Apple ID was used. A
      factory reset is the last resort.</p>
    </details>
    <details>
      <summary>Blocked sites still load</summary>
      <p>Check that the profile is installed and the domain is on the blocklist, then wait a
      minute or try a private Safari window, since DNS answers may be cached.</p>
    </details>
  </section>
</main>
<script>
const STORAGE_KEY = "betblockerSetupChecklist";
const boxes = Array.from(document.querySelectorAll("[data-step]"));
let state = {};
try { state = JSON.parse(localStorage.getItem(STORAGE_KEY)) || {}; } catch (e) { state = {}; }

function render() {
  const done = boxes.filter((box) => box.checked).length;
  document.getElementById("progress").style.width = (done / boxes.length) * 100 + "%";
  document.getElementById("complete").classList.toggle("hidden", done !== boxes.length);
}

for (const box of boxes) {
  box.checked = Boolean(state[box.dataset.step]);
  box.onchange = () => {
    state[box.dataset.step] = box.checked;
    localStorage.setItem(STORAGE_KEY, JSON.stringify(state));
    render();
  };
}
render();
</script>
</body>
</html>
"""
