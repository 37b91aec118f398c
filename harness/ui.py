# harness/ui.py
from fastapi import APIRouter
from fastapi.responses import HTMLResponse

router = APIRouter()

INDEX_HTML = r"""<!doctype html>
<html>
<head>
  <meta charset="utf-8"/>
  <title>Runtime Comparison Harness</title>
  <style>
    body { font-family: Arial, sans-serif; max-width: 1100px; margin: 24px auto; }
    h2 { margin-bottom: 6px; }
    .row { display: flex; gap: 12px; align-items: center; flex-wrap: wrap; }
    .card { border: 1px solid #ddd; padding: 12px; border-radius: 12px; margin-top: 12px; }
    .muted { color: #666; }
    pre { background: #0b1020; color: #cfe3ff; padding: 12px; border-radius: 10px; overflow: auto; max-height: 360px; }
    button { padding: 8px 12px; border-radius: 10px; border: 1px solid #bbb; cursor: pointer; background: #fafafa; }
    button:hover { background: #f0f0f0; }
    input[type="text"], select { padding: 8px 10px; border-radius: 10px; border: 1px solid #bbb; min-width: 280px; }
    .pill { display:inline-block; padding: 2px 8px; border-radius: 999px; background:#eef; font-size:12px; }
    .split { display:grid; grid-template-columns: 1fr 1fr; gap: 12px; }
    @media (max-width: 900px) { .split { grid-template-columns: 1fr; } }
    .ok { color: #0a7a2f; }
    .bad { color: #b00020; }
  </style>
</head>
<body>
  <h2>Runtime Comparison Harness</h2>
  <div class="muted">
    Drives the same load against two services and streams progress over <span class="pill">/ws</span>.
  </div>

  <div class="card">
    <div class="row">
      <input id="urlA" type="text" placeholder="Target A URL (e.g. http://localhost:3000)" />
      <input id="urlB" type="text" placeholder="Target B URL (e.g. http://localhost:3001)" />
    </div>
    <div class="row" style="margin-top:10px;">
      <select id="scenario"></select>
      <button id="btnStart">Start</button>
      <button id="btnStop">Stop</button>
      <button id="btnResults">Results</button>
      <button id="btnHealth">GET /health</button>
      <span id="status" class="muted">Ready.</span>
    </div>
  </div>

  <div class="split">
    <div class="card">
      <h3 style="margin-top:0;">Live events <span id="wsState" class="pill">disconnected</span></h3>
      <pre id="events"></pre>
    </div>
    <div class="card">
      <h3 style="margin-top:0;">Response Viewer</h3>
      <pre id="out">(responses will appear here)</pre>
    </div>
  </div>

<script>
  const statusEl = document.getElementById('status');
  const outEl = document.getElementById('out');
  const eventsEl = document.getElementById('events');
  let sessionId = null;

  function setStatus(msg, ok=true) {
    statusEl.className = ok ? "ok" : "bad";
    statusEl.textContent = msg;
  }

  function show(obj) {
    if (typeof obj === "string") outEl.textContent = obj;
    else outEl.textContent = JSON.stringify(obj, null, 2);
  }

  async function safeFetch(url, opts={}) {
    try {
      const res = await fetch(url, opts);
      const ct = res.headers.get("content-type") || "";
      const body = ct.includes("application/json") ? await res.json() : await res.text();
      setStatus(`${opts.method || "GET"} ${url} -> ${res.status}`, res.ok);
      show(body);
      return { ok: res.ok, status: res.status, body };
    } catch (e) {
      setStatus(`Fetch failed: ${e}`, false);
      return { ok: false, status: 0, body: String(e) };
    }
  }

  function logEvent(ev) {
    let line = `[${ev.type}]`;
    if (ev.target) line += ` ${ev.target}`;
    if (ev.message) line += ` ${ev.message}`;
    if (ev.type === "snapshot") line += ` ${ev.percent.toFixed(0)}%`;
    if (ev.type === "run-completed" && ev.comparison) line += ` winner=${ev.comparison.winner} (+${ev.comparison.improvement}%)`;
    if (ev.error) line += ` ${ev.error}`;
    eventsEl.textContent = (line + "\n" + eventsEl.textContent).slice(0, 20000);
    if (ev.type === "run-completed") show(ev);
  }

  function connect() {
    const proto = location.protocol === "https:" ? "wss" : "ws";
    const ws = new WebSocket(`${proto}://${location.host}/ws`);
    const state = document.getElementById('wsState');
    ws.onopen = () => { state.textContent = "connected"; };
    ws.onclose = () => { state.textContent = "disconnected"; setTimeout(connect, 2000); };
    ws.onmessage = (msg) => logEvent(JSON.parse(msg.data));
  }

  async function loadScenarios() {
    const res = await fetch("/api/configurations");
    const presets = await res.json();
    const sel = document.getElementById('scenario');
    for (const [name, cfg] of Object.entries(presets)) {
      const opt = document.createElement("option");
      opt.value = name;
      opt.textContent = `${name} - ${cfg.users} users, ${cfg.durationSeconds}s`;
      sel.appendChild(opt);
    }
  }

  document.getElementById('btnStart').onclick = async () => {
    const body = {
      targetAUrl: document.getElementById('urlA').value.trim(),
      targetBUrl: document.getElementById('urlB').value.trim(),
      scenarioName: document.getElementById('scenario').value,
    };
    const res = await safeFetch("/api/test/start", {
      method: "POST",
      headers: { "Content-Type": "application/json" },
      body: JSON.stringify(body),
    });
    if (res.ok) sessionId = res.body.sessionId;
  };

  document.getElementById('btnStop').onclick = async () => {
    if (!sessionId) { alert("No session started"); return; }
    await safeFetch(`/api/test/stop/${encodeURIComponent(sessionId)}`, { method: "POST" });
  };

  document.getElementById('btnResults').onclick = async () => {
    if (!sessionId) { alert("No session started"); return; }
    await safeFetch(`/api/test/results/${encodeURIComponent(sessionId)}`);
  };

  document.getElementById('btnHealth').onclick = () => safeFetch("/health");

  loadScenarios();
  connect();
</script>

</body>
</html>
"""

@router.get("/", response_class=HTMLResponse)
def index() -> str:
    return INDEX_HTML
