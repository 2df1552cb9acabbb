import logging
import posixpath
import re
import threading
from dataclasses import dataclass

import markdown
from markupsafe import escape

from discovery import FetchError

log = logging.getLogger(__name__)

_IMAGE_RE = re.compile(r'!\[([^\]]*)\]\(\s*(<[^>]*>|[^)\s]+)((?:\s+(?:"[^"]*"|\'[^\']*\'))?\s*)\)')
_SCHEME_RE = re.compile(r'^[a-zA-Z][a-zA-Z0-9+.\-]*:')


def _is_relative_ref(src: str) -> bool:
    return bool(src) and not (
        _SCHEME_RE.match(src) or src.startswith("/") or src.startswith("#")
    )


def rewrite_image_refs(text: str, file_path: str) -> str:
    """Resolve relative image references against the directory of ``file_path``.

    Files at the root are returned unchanged.
    """

    base = posixpath.dirname("/" + file_path.lstrip("/"))
    if base == "/":
        return text

    def replace(m):
        alt, src, title = m.group(1), m.group(2), m.group(3)
        bracketed = src.startswith("<") and src.endswith(">")
        target = src[1:-1] if bracketed else src
        if not _is_relative_ref(target):
            return m.group(0)
        resolved = posixpath.normpath(posixpath.join(base, target))
        if bracketed:
            resolved = f"<{resolved}>"
        return f"![{alt}]({resolved}{title})"

    return _IMAGE_RE.sub(replace, text)


# Fenced blocks, code spans and raw HTML tags are copied through untouched.
_VERBATIM_RE = re.compile(
    r'^(?P<fence>`{3,}|~{3,})[^\n]*\n.*?^(?P=fence)[ \t]*$'
    r'|(?P<ticks>`+).+?(?P=ticks)'
    r'|<[^>\n]+>',
    re.MULTILINE | re.DOTALL,
)
_BARE_URL_RE = re.compile(r'(?<!\]\()(?<!\()(https?://[^\s<>\)\]]+)')


def _link_bare_urls(text: str) -> str:
    return _BARE_URL_RE.sub(lambda m: f'[{m.group(1)}]({m.group(1)})', text)


def auto_link_urls(text: str) -> str:
    out = []
    pos = 0
    for m in _VERBATIM_RE.finditer(text):
        out.append(_link_bare_urls(text[pos:m.start()]))
        out.append(m.group(0))
        pos = m.end()
    out.append(_link_bare_urls(text[pos:]))
    return "".join(out)


def render_markdown(text: str) -> str:
    text = auto_link_urls(text)
    extensions = ["fenced_code", "tables", "toc", "sane_lists"]
    try:
        import pygments  # noqa: F401
        extensions.append("codehilite")
    except ImportError:
        pass
    html = markdown.markdown(text, extensions=extensions)
    html = re.sub(
        r'<a href="(https?://[^"]+)"',
        r'<a href="\1" target="_blank" rel="noopener noreferrer"',
        html,
    )
    return html


def render_error(name: str, reason: str) -> str:
    return (
        '<div class="error-content">'
        f"<h3>Error loading {escape(name)}</h3>"
        f"<p>{escape(reason)}</p>"
        "</div>"
    )


@dataclass(frozen=True)
class LoadResult:
    path: str
    name: str
    html: str
    ok: bool
    generation: int
    stale: bool = False

    def to_json(self) -> dict:
        return {
            "path": self.path,
            "name": self.name,
            "html": self.html,
            "ok": self.ok,
            "generation": self.generation,
            "stale": self.stale,
        }


class ContentLoader:
    """Fetches and renders markdown, numbering each request.

    Only the result of the most recent :meth:`load` call is current; any
    earlier result that finishes later comes back with ``stale=True``.
    """

    def __init__(self, source):
        self.source = source
        self._generation = 0
        self._lock = threading.Lock()

    @property
    def generation(self) -> int:
        return self._generation

    def begin(self) -> int:
        with self._lock:
            self._generation += 1
            return self._generation

    def is_current(self, generation: int) -> bool:
        return generation == self._generation

    def load(self, path: str, name: str | None = None) -> LoadResult:
        generation = self.begin()
        name = name or posixpath.basename(path)
        try:
            text = self.source.fetch_text(path)
        except FetchError as exc:
            log.error("Error loading markdown file %s: %s", path, exc.reason)
            html, ok = render_error(name, exc.reason), False
        else:
            html, ok = render_markdown(rewrite_image_refs(text, path)), True
        return LoadResult(
            path=path,
            name=name,
            html=f'<div class="markdown-content">{html}</div>' if ok else html,
            ok=ok,
            generation=generation,
            stale=not self.is_current(generation),
        )
