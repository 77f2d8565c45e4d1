"""fetchUrl support: download a public web page and reduce it to readable text."""

import html
import html.parser
import ipaddress
import re
import socket
import urllib.error
import urllib.parse
import urllib.request

MAX_RESPONSE_SIZE = 5 * 1024 * 1024
DEFAULT_MAX_LENGTH = 10000
DEFAULT_TIMEOUT_MS = 5000
MAX_REDIRECTS = 10
FORMATS = ("markdown", "text", "html")

HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; codebro/0.1)",
    "Accept": "text/markdown,text/html,text/plain,application/json,*/*;q=0.8",
}

_BLOCK_TAGS = frozenset(
    {"p", "div", "br", "h1", "h2", "h3", "h4", "h5", "h6", "li", "tr", "pre", "hr",
     "blockquote", "section", "article", "header", "footer", "table"}
)
_SKIP_TAGS = frozenset({"script", "style", "noscript", "svg"})
_TEXT_TYPES = (
    "application/json",
    "application/xml",
    "application/xhtml+xml",
    "application/javascript",
)


class FetchError(Exception):
    pass


class _RedirectError(Exception):
    def __init__(self, url: str):
        self.url = url


class _NoRedirectHandler(urllib.request.HTTPRedirectHandler):
    def redirect_request(self, req, fp, code, msg, headers, newurl):
        raise _RedirectError(newurl)


class _TextExtractor(html.parser.HTMLParser):
    def __init__(self):
        super().__init__(convert_charrefs=True)
        self._parts: list[str] = []
        self._skip_depth = 0

    def handle_starttag(self, tag, attrs):
        if tag in _SKIP_TAGS:
            self._skip_depth += 1
        elif tag in _BLOCK_TAGS and not self._skip_depth:
            self._parts.append("\n")

    def handle_endtag(self, tag):
        if tag in _SKIP_TAGS:
            self._skip_depth = max(0, self._skip_depth - 1)
        elif tag in _BLOCK_TAGS and not self._skip_depth:
            self._parts.append("\n")

    def handle_data(self, data):
        if not self._skip_depth:
            self._parts.append(data)

    def text(self) -> str:
        text = re.sub(r"[^\S\n]+", " ", "".join(self._parts))
        return re.sub(r"\n\s*\n+", "\n\n", text).strip()


def html_to_text(body: str) -> str:
    parser = _TextExtractor()
    parser.feed(body)
    parser.close()
    return html.unescape(parser.text())


def html_to_markdown(body: str) -> str:
    from html_to_markdown import convert

    return convert(body)


def check_url(url: str) -> None:
    """Reject non-HTTP schemes and hosts resolving to private addresses."""
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise FetchError(f"url scheme {parsed.scheme!r} is not allowed, must be http or https")
    if not parsed.hostname:
        raise FetchError("could not parse hostname from url")
    try:
        infos = socket.getaddrinfo(parsed.hostname, None, socket.AF_UNSPEC, socket.SOCK_STREAM)
    except socket.gaierror as e:
        raise FetchError(f"could not resolve hostname {parsed.hostname!r}: {e}") from e
    for *_, sockaddr in infos:
        addr = ipaddress.ip_address(sockaddr[0])
        if addr.is_private or addr.is_loopback or addr.is_link_local or addr.is_reserved:
            raise FetchError(f"url resolves to private address {addr}")


def _decode(data: bytes, content_type: str) -> str:
    match = re.search(r"charset=([\w-]+)", content_type or "", re.I)
    for encoding in (match and match.group(1), "utf-8"):
        if not encoding:
            continue
        try:
            return data.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            continue
    return data.decode("latin-1")


def fetch_url(
    url: str,
    *,
    max_length: int = DEFAULT_MAX_LENGTH,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    format: str = "markdown",
) -> dict:
    """Fetch ``url`` and return its readable content, truncated to ``max_length`` characters.

    HTML is converted to ``format``: "markdown", "text" or "html" (untouched).
    Raises FetchError on any failure.
    """
    if not isinstance(url, str) or not url:
        raise FetchError("url must be a non-empty string")
    if format not in FORMATS:
        raise FetchError(f"invalid format {format!r}, must be one of: {', '.join(FORMATS)}")
    timeout = max(1.0, min(timeout_ms / 1000, 120.0))

    opener = urllib.request.build_opener(_NoRedirectHandler)
    current = url
    for _ in range(MAX_REDIRECTS + 1):
        check_url(current)
        try:
            resp = opener.open(urllib.request.Request(current, headers=HEADERS), timeout=timeout)
            break
        except _RedirectError as r:
            current = urllib.parse.urljoin(current, r.url)
        except urllib.error.HTTPError as e:
            raise FetchError(f"HTTP {e.code} {e.reason}") from e
        except (urllib.error.URLError, TimeoutError, OSError) as e:
            raise FetchError(f"could not fetch {current}: {e}") from e
    else:
        raise FetchError(f"too many redirects (limit is {MAX_REDIRECTS})")

    with resp:
        content_type = resp.headers.get("Content-Type", "")
        mime = content_type.split(";")[0].strip().lower()
        if mime and not mime.startswith("text/") and mime not in _TEXT_TYPES:
            raise FetchError(f"binary content ({mime}) cannot be displayed as text")
        data = resp.read(MAX_RESPONSE_SIZE + 1)
    if len(data) > MAX_RESPONSE_SIZE:
        raise FetchError("response too large (limit is 5MB)")

    body = _decode(data, content_type)
    if mime not in ("text/html", "application/xhtml+xml") or format == "html":
        content = body
    elif format == "text":
        content = html_to_text(body)
    else:
        try:
            content = html_to_markdown(body)
        except Exception as e:
            raise FetchError(f"failed to convert HTML to markdown: {e}") from e

    truncated = len(content) > max_length
    return {
        "url": current,
        "contentType": mime,
        "content": content[:max_length],
        "truncated": truncated,
        "length": len(content),
    }
