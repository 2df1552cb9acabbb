import json as _json
import logging
import mimetypes
import os
import re
import secrets
import threading
import time
from collections import OrderedDict
from datetime import datetime, timezone
from pathlib import Path

from flask import Flask, abort, jsonify, make_response, render_template_string, request, send_file

from discovery import DiscoveryError, LocalSource, RemoteSource, safe_root_path
from viewer import ChangeSet, ViewerContext

log = logging.getLogger(__name__)

_CONFIG_PATH = Path("mdview.config.json")
_DEFAULTS = {
    "port": 3000,
    "host": "127.0.0.1",
    "root": ".",
    "excluded_dirs": ["node_modules"],
    "poll_interval": 5,
    "discovery_url": None,
    "max_viewers": 64,
    "viewer_ttl": 3600,
}
_VIEWER_HEADER = "X-Viewer-Id"
_VIEWER_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def load_config(path: Path = _CONFIG_PATH, environ=None) -> dict:
    environ = os.environ if environ is None else environ
    cfg = dict(_DEFAULTS)
    if path.is_file():
        try:
            with open(path) as f:
                user = _json.load(f)
            cfg.update(user)
        except (OSError, ValueError) as e:
            log.warning("could not load %s: %s", path.name, e)
    if environ.get("PORT"):
        try:
            cfg["port"] = int(environ["PORT"])
        except ValueError:
            log.warning("ignoring non-numeric PORT=%r", environ["PORT"])
    cfg["poll_interval"] = max(1, int(cfg["poll_interval"]))
    return cfg


def make_source(cfg: dict):
    if cfg.get("discovery_url"):
        return RemoteSource(cfg["discovery_url"])
    return LocalSource(Path(cfg["root"]), cfg["excluded_dirs"])


class ViewerSessions:
    """Viewer contexts keyed by the per-tab ``X-Viewer-Id`` header.

    Contexts idle longer than ``ttl`` seconds are dropped, and at most
    ``max_contexts`` are kept, least recently used going first.
    """

    def __init__(self, source, max_contexts: int = 64, ttl: float = 3600.0, clock=time.monotonic):
        self.source = source
        self.max_contexts = max(1, int(max_contexts))
        self.ttl = float(ttl)
        self.clock = clock
        self._contexts: OrderedDict[str, tuple[ViewerContext, float]] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._contexts)

    def _prune(self, now: float) -> None:
        while self._contexts:
            vid, (_, seen) = next(iter(self._contexts.items()))
            if now - seen <= self.ttl and len(self._contexts) <= self.max_contexts:
                break
            del self._contexts[vid]
            log.debug("dropped viewer context %s", vid)

    def get(self, vid: str | None) -> ViewerContext | None:
        if not vid:
            return None
        with self._lock:
            now = self.clock()
            self._prune(now)
            item = self._contexts.get(vid)
            if item is None:
                return None
            self._contexts[vid] = (item[0], now)
            self._contexts.move_to_end(vid)
            return item[0]

    def create(self, vid: str | None = None) -> tuple[str, ViewerContext, ChangeSet]:
        """Build a context and run its first poll, returning that poll's changes."""

        vid = vid or secrets.token_urlsafe(16)
        ctx = ViewerContext(self.source)
        changes = ctx.poll()
        with self._lock:
            self._contexts[vid] = (ctx, self.clock())
            self._contexts.move_to_end(vid)
            self._prune(self.clock())
        return vid, ctx, changes


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def create_app(cfg: dict | None = None) -> Flask:
    cfg = load_config() if cfg is None else {**_DEFAULTS, **cfg}
    app = Flask(__name__, static_folder=None)
    root = Path(cfg["root"]).resolve()
    source = make_source(cfg)
    sessions = ViewerSessions(source, cfg["max_viewers"], cfg["viewer_ttl"])

    def viewer_context():
        vid = request.headers.get(_VIEWER_HEADER, "")
        if not _VIEWER_ID_RE.match(vid):
            vid = None
        ctx = sessions.get(vid)
        if ctx is not None:
            return vid, ctx, None
        return sessions.create(vid)

    def viewer_response(handler, startup_aware=False):
        vid, ctx, startup = viewer_context()
        resp = make_response(handler(ctx, startup) if startup_aware else handler(ctx))
        resp.headers[_VIEWER_HEADER] = vid
        return resp

    def json_body() -> dict:
        body = request.get_json(silent=True)
        return body if isinstance(body, dict) else {}

    @app.route("/")
    def index():
        return render_template_string(MAIN_TEMPLATE)

    @app.route("/api/config")
    def api_config():
        return jsonify({"poll_interval": cfg["poll_interval"]})

    @app.route("/api/health")
    def api_health():
        return jsonify({"status": "ok", "timestamp": _timestamp()})

    @app.route("/api/discover-markdown")
    def api_discover():
        try:
            files = source.list_files()
        except DiscoveryError as e:
            log.error("Error discovering markdown files: %s", e)
            return jsonify({"error": "Failed to discover markdown files"}), 500
        return jsonify([f.to_json() for f in files])

    @app.route("/api/viewer/poll")
    def api_viewer_poll():
        def handle(ctx, startup):
            changes = startup if startup is not None else ctx.poll()
            return jsonify(ctx.state(changes))
        return viewer_response(handle, startup_aware=True)

    @app.route("/api/viewer/key", methods=["POST"])
    def api_viewer_key():
        key = json_body().get("key", "")

        def handle(ctx):
            result = ctx.handle_key(key)
            return jsonify({"handled": result.handled, "open": result.open_path,
                            "focus": ctx.focus.to_json()})
        return viewer_response(handle)

    @app.route("/api/viewer/select", methods=["POST"])
    def api_viewer_select():
        path = json_body().get("path", "")
        if not isinstance(path, str) or not path:
            abort(400)

        def handle(ctx):
            return jsonify({"open": ctx.select(path), "focus": ctx.focus.to_json()})
        return viewer_response(handle)

    @app.route("/api/viewer/toggle-folder", methods=["POST"])
    def api_viewer_toggle_folder():
        folder = json_body().get("path", "")
        if not isinstance(folder, str) or not folder:
            abort(400)

        def handle(ctx):
            ctx.toggle_folder(folder)
            return jsonify(ctx.state())
        return viewer_response(handle)

    @app.route("/api/viewer/load")
    def api_viewer_load():
        path = request.args.get("path", "")
        if not path:
            abort(400)
        return viewer_response(lambda ctx: jsonify(ctx.load(path).to_json()))

    @app.route("/<path:file_path>")
    def static_file(file_path):
        fpath = safe_root_path(root, file_path)
        if fpath is None or not fpath.is_file():
            abort(404)
        mime, _ = mimetypes.guess_type(str(fpath))
        return send_file(fpath, mimetype=mime)

    return app


MAIN_TEMPLATE = r"""<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>Markdown Viewer</title>
<style>

*, *::before, *::after { box-sizing: border-box; margin: 0; padding: 0; }

:root {
  --bg-primary: #ffffff;
  --bg-secondary: #f6f6fa;
  --bg-tertiary: #ececf4;
  --bg-hover: rgba(134,112,255,.08);
  --bg-active: rgba(134,112,255,.15);
  --text: #26233a;
  --text-muted: #575279;
  --text-faint: #9893a5;
  --accent: #6e5ce6;
  --accent-dim: rgba(134,112,255,.35);
  --border: rgba(0,0,0,.08);
  --error: #d7263d;
  --sidebar-width: 280px;
  --font: -apple-system, BlinkMacSystemFont, 'Segoe UI', 'Inter', Roboto, Oxygen, Ubuntu, sans-serif;
  --font-mono: 'Fira Code', 'JetBrains Mono', 'Source Code Pro', 'Consolas', monospace;
  --radius: 4px;
}
body.dark-mode {
  --bg-primary: #1a1a2e;
  --bg-secondary: #16162a;
  --bg-tertiary: #1f1f3a;
  --text: #e0def4;
  --text-muted: #908caa;
  --text-faint: #6e6a86;
  --accent: #a48fff;
  --border: rgba(255,255,255,.06);
  --error: #ff6b81;
}

html, body { height: 100%; background: var(--bg-primary); color: var(--text); font-family: var(--font); font-size: 16px; line-height: 1.6; }
::selection { background: var(--accent-dim); }

.app-container { display: flex; height: 100vh; overflow: hidden; }

.main-content { flex: 1; min-width: 300px; overflow-y: auto; padding: 32px 48px; }

.resizer { width: 6px; cursor: col-resize; background: var(--border); flex-shrink: 0; }
.resizer:hover { background: var(--accent); }

.sidebar {
  width: var(--sidebar-width);
  min-width: 250px;
  max-width: 600px;
  background: var(--bg-secondary);
  display: flex;
  flex-direction: column;
  overflow: hidden;
}

.sidebar-header {
  padding: 10px 14px;
  font-size: 12px;
  font-weight: 700;
  color: var(--text-faint);
  text-transform: uppercase;
  letter-spacing: .08em;
  border-bottom: 1px solid var(--border);
  display: flex;
  align-items: center;
  gap: 8px;
}
.sidebar-header label { margin-left: auto; font-weight: 400; text-transform: none; cursor: pointer; }

.update-indicator { width: 10px; height: 10px; border: 2px solid var(--accent); border-top-color: transparent; border-radius: 50%; opacity: 0; }
.update-indicator.spinning { opacity: 1; animation: spin .8s linear infinite; }
@keyframes spin { to { transform: rotate(360deg); } }

.file-tree { flex: 1; overflow-y: auto; padding: 4px 0; outline: none; }
.file-tree:focus-visible { box-shadow: inset 0 0 0 1px var(--accent-dim); }

.tree-item {
  display: flex;
  align-items: center;
  padding: 2px 10px 2px calc(var(--depth, 0) * 12px + 10px);
  cursor: pointer;
  font-size: 13px;
  color: var(--text-muted);
  border-radius: var(--radius);
  margin: 1px 6px;
  white-space: nowrap;
  text-overflow: ellipsis;
  overflow: hidden;
  user-select: none;
}
.tree-item:hover { background: var(--bg-hover); color: var(--text); }
.tree-item.active { background: var(--bg-active); color: var(--accent); }
.tree-item.focused { box-shadow: inset 0 0 0 1px var(--accent); }
.tree-item .icon { margin-right: 6px; }
.folder-header { font-weight: 600; }
.loading-container { padding: 14px; font-size: 13px; color: var(--text-faint); }

.markdown-content h1, .markdown-content h2, .markdown-content h3 { margin: 1.2em 0 .5em; }
.markdown-content p, .markdown-content ul, .markdown-content ol, .markdown-content pre, .markdown-content table { margin-bottom: 1em; }
.markdown-content ul, .markdown-content ol { padding-left: 1.5em; }
.markdown-content code { font-family: var(--font-mono); font-size: .9em; background: var(--bg-tertiary); padding: 1px 4px; border-radius: 3px; }
.markdown-content pre { background: var(--bg-tertiary); padding: 12px; border-radius: var(--radius); overflow-x: auto; }
.markdown-content pre code { background: none; padding: 0; }
.markdown-content img { max-width: 100%; }
.markdown-content a { color: var(--accent); }
.markdown-content table { border-collapse: collapse; }
.markdown-content th, .markdown-content td { border: 1px solid var(--border); padding: 4px 10px; }
.error-content { color: var(--error); }
.welcome { color: var(--text-faint); text-align: center; margin-top: 20vh; }
.file-popover {
  position: fixed;
  z-index: 10;
  max-width: 320px;
  padding: 6px 10px;
  font-size: 12px;
  background: var(--bg-secondary);
  color: var(--text);
  border: 1px solid var(--border);
  border-radius: var(--radius);
  box-shadow: 0 2px 8px rgba(0, 0, 0, .2);
  pointer-events: none;
}
.file-popover .ext { color: var(--accent); }
.file-popover .meta { color: var(--text-faint); margin-top: 2px; }
</style>
</head>
<body>
<div class="app-container">
  <main class="main-content" id="markdownViewer">
    <div class="welcome"><p>Select a markdown file from the tree</p></div>
  </main>
  <div class="resizer" id="resizer"></div>
  <nav class="sidebar" id="sidebar">
    <div class="sidebar-header">
      Files <span id="fileCount" style="font-weight:400;opacity:.6"></span>
      <span class="update-indicator" id="updateIndicator"></span>
      <label><input type="checkbox" id="darkModeCheckbox"> Dark</label>
    </div>
    <div class="file-tree" id="fileTree" tabindex="0">
      <div class="loading-container">Loading files...</div>
    </div>
  </nav>
</div>

<script>
const $ = s => document.querySelector(s);
const fileTree = $('#fileTree');
const viewer = $('#markdownViewer');
const NAV_KEYS = ['ArrowDown', 'ArrowUp', 'Enter'];
const VIEWER_ID = (window.crypto && crypto.randomUUID) ? crypto.randomUUID() : Math.random().toString(36).slice(2) + Date.now().toString(36);
const VIEWER_HEADERS = { 'X-Viewer-Id': VIEWER_ID };
let currentPath = null;
let loadSeq = 0;
let refreshTimer = null;
let firstPoll = true;
let popover = null;
let popoverTimer = null;

function esc(s) {
  const d = document.createElement('div');
  d.textContent = s;
  return d.innerHTML;
}

async function postJson(url, body) {
  const res = await fetch(url, {
    method: 'POST',
    headers: { 'Content-Type': 'application/json', ...VIEWER_HEADERS },
    body: JSON.stringify(body),
  });
  if (!res.ok) throw new Error('HTTP error! status: ' + res.status);
  return res.json();
}

function fileRow(file, depth) {
  const row = document.createElement('div');
  row.className = 'tree-item file-item';
  row.dataset.path = file.path;
  row.style.setProperty('--depth', depth);
  row.innerHTML = '<span class="icon">&#128196;</span><span>' + esc(file.displayName) + '</span>';
  row.addEventListener('click', () => selectFile(file.path));
  row.addEventListener('mouseenter', () => schedulePopover(file, row));
  row.addEventListener('mouseleave', hidePopover);
  return row;
}

function schedulePopover(file, row) {
  hidePopover();
  popoverTimer = setTimeout(() => {
    popover = document.createElement('div');
    popover.className = 'file-popover';
    popover.innerHTML = '<div>' + esc(file.stem) + '<span class="ext">' + esc(file.extension) + '</span></div>' +
      (file.title ? '<div class="meta">' + esc(file.title) + '</div>' : '');
    const r = row.getBoundingClientRect();
    popover.style.top = r.bottom + 4 + 'px';
    popover.style.left = r.left + 'px';
    document.body.appendChild(popover);
  }, 300);
}

function hidePopover() {
  clearTimeout(popoverTimer);
  popoverTimer = null;
  if (popover) {
    popover.remove();
    popover = null;
  }
}

function renderTree(node, container, depth = 0) {
  node.files.forEach(file => container.appendChild(fileRow(file, depth)));
  node.folders.forEach(folder => {
    const header = document.createElement('div');
    header.className = 'tree-item folder-header';
    header.dataset.folder = folder.path;
    header.style.setProperty('--depth', depth);
    header.innerHTML = '<span class="icon">' + (folder.collapsed ? '&#128193;' : '&#128194;') + '</span><span>' + esc(folder.name) + '</span>';
    header.addEventListener('click', () => toggleFolder(folder.path));
    container.appendChild(header);
    if (!folder.collapsed) renderTree(folder, container, depth + 1);
  });
}

function applyState(state) {
  hidePopover();
  fileTree.innerHTML = '';
  renderTree(state.tree, fileTree);
  $('#fileCount').textContent = state.rows.length ? '(' + state.rows.length + ')' : '';
  markActive(currentPath);
  markFocus(state.focus);
}

function markActive(path) {
  fileTree.querySelectorAll('.file-item').forEach(el => {
    el.classList.toggle('active', el.dataset.path === path);
  });
}

function markFocus(focus) {
  let focused = null;
  fileTree.querySelectorAll('.file-item').forEach(el => {
    const on = focus.index >= 0 && el.dataset.path === focus.path;
    el.classList.toggle('focused', on);
    if (on) focused = el;
  });
  if (focused) scrollIntoViewIfNeeded(focused);
}

function scrollIntoViewIfNeeded(el) {
  const r = el.getBoundingClientRect();
  const c = fileTree.getBoundingClientRect();
  if (r.top < c.top || r.bottom > c.bottom) el.scrollIntoView({ block: 'nearest' });
}

async function openFile(path) {
  const seq = ++loadSeq;
  markActive(path);
  try {
    const res = await fetch('/api/viewer/load?path=' + encodeURIComponent(path), { headers: VIEWER_HEADERS });
    if (!res.ok) throw new Error('HTTP error! status: ' + res.status);
    const data = await res.json();
    if (seq !== loadSeq || data.stale) return;
    viewer.innerHTML = data.html;
    viewer.scrollTop = 0;
    currentPath = path;
  } catch (e) {
    if (seq !== loadSeq) return;
    console.error('Error loading markdown file:', e);
    viewer.innerHTML = '<div class="error-content"><h3>Error loading ' + esc(path.split('/').pop()) + '</h3><p>' + esc(e.message) + '</p></div>';
    currentPath = path;
  }
}

async function selectFile(path) {
  fileTree.focus();
  const data = await postJson('/api/viewer/select', { path });
  markFocus(data.focus);
  if (data.open) openFile(data.open);
}

async function toggleFolder(path) {
  applyState(await postJson('/api/viewer/toggle-folder', { path }));
}

fileTree.addEventListener('keydown', async e => {
  if (!NAV_KEYS.includes(e.key)) return;
  e.preventDefault();
  const data = await postJson('/api/viewer/key', { key: e.key });
  markFocus(data.focus);
  if (data.open) openFile(data.open);
});

function notifyFileChanges() {
  const indicator = $('#updateIndicator');
  indicator.classList.add('spinning');
  setTimeout(() => indicator.classList.remove('spinning'), 1500);
}

async function poll() {
  try {
    const res = await fetch('/api/viewer/poll', { headers: VIEWER_HEADERS });
    if (!res.ok) throw new Error('HTTP error! status: ' + res.status);
    const state = await res.json();
    if (state.changed || firstPoll) {
      applyState(state);
      if (!firstPoll) notifyFileChanges();
    }
    firstPoll = false;
  } catch (e) {
    console.error('Error loading file tree:', e);
    if (firstPoll) fileTree.innerHTML = '<div class="loading-container error">Error loading files</div>';
  }
}

function startPolling(seconds) {
  poll();
  refreshTimer = setInterval(poll, seconds * 1000);
}

function stopPolling() {
  if (refreshTimer) {
    clearInterval(refreshTimer);
    refreshTimer = null;
  }
}

(() => {
  const checkbox = $('#darkModeCheckbox');
  const saved = localStorage.getItem('darkMode') === 'true';
  checkbox.checked = saved;
  document.body.classList.toggle('dark-mode', saved);
  checkbox.addEventListener('change', () => {
    document.body.classList.toggle('dark-mode', checkbox.checked);
    localStorage.setItem('darkMode', String(checkbox.checked));
  });
})();

(() => {
  const resizer = $('#resizer');
  const sidebar = $('#sidebar');
  const container = $('.app-container');
  let resizing = false;
  const savedWidth = localStorage.getItem('sidebarWidth');
  if (savedWidth) sidebar.style.width = savedWidth;
  resizer.addEventListener('mousedown', e => {
    e.preventDefault();
    resizing = true;
    document.body.style.cursor = 'col-resize';
    document.body.style.userSelect = 'none';
  });
  document.addEventListener('mousemove', e => {
    if (!resizing) return;
    const rect = container.getBoundingClientRect();
    const width = Math.max(250, Math.min(600, rect.right - e.clientX - 3));
    if (rect.width - width - 6 >= 300) sidebar.style.width = width + 'px';
  });
  document.addEventListener('mouseup', () => {
    if (!resizing) return;
    resizing = false;
    document.body.style.cursor = '';
    document.body.style.userSelect = '';
    localStorage.setItem('sidebarWidth', sidebar.style.width);
  });
})();

fetch('/api/config').then(r => r.json()).then(cfg => {
  startPolling(cfg.poll_interval || 5);
}).catch(() => { startPolling(5); });

window.addEventListener('beforeunload', stopPolling);
</script>
</body>
</html>
"""


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    cfg = load_config()
    app = create_app(cfg)
    print(f"Serving markdown from: {Path(cfg['root']).resolve()}")
    print(f"Markdown Viewer server running on http://localhost:{cfg['port']}")
    print(f"API endpoint: http://localhost:{cfg['port']}/api/discover-markdown")
    app.run(host=cfg["host"], port=cfg["port"])


if __name__ == "__main__":
    main()
