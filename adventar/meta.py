"""Link-preview metadata (page title + preview image) for entry URLs."""

from __future__ import annotations

import ipaddress
import re
import socket
from dataclasses import dataclass
from html.parser import HTMLParser
from typing import Callable, Dict, List, Optional
from urllib.parse import urljoin, urlparse

import requests

from adventar.errors import MetaFetchError

DEFAULT_TIMEOUT_SECONDS = 10
MAX_DOCUMENT_BYTES = 1024 * 1024
MAX_REDIRECTS = 5
USER_AGENT = "AdventarBot/1.0 (+https://adventar.org)"
_WHITESPACE = re.compile(r"\s+")

Resolver = Callable[[str, int], List[str]]


@dataclass
class SiteMeta:
    title: str
    image_url: str


class SiteMetaFetcher:
    """Download a page and read its Open Graph / Twitter card metadata.

    Only http(s) URLs whose host resolves to public addresses are fetched.
    Redirects are followed by hand so every hop goes through the same check.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        http: Optional[requests.Session] = None,
        max_bytes: int = MAX_DOCUMENT_BYTES,
        resolve: Optional[Resolver] = None,
    ) -> None:
        self.timeout = timeout
        self.max_bytes = max_bytes
        self._http = http or requests.Session()
        self._resolve = resolve or _resolve_host

    def fetch(self, url: str) -> SiteMeta:
        current = url
        for _ in range(MAX_REDIRECTS + 1):
            self._check_target(current)
            try:
                with self._http.get(
                    current,
                    timeout=self.timeout,
                    headers={"User-Agent": USER_AGENT},
                    stream=True,
                    allow_redirects=False,
                ) as resp:
                    if resp.is_redirect:
                        current = urljoin(current, resp.headers.get("Location") or "")
                        continue
                    resp.raise_for_status()
                    body = self._read_capped(resp)
                    encoding = _declared_charset(resp)
                    final_url = resp.url or current
            except requests.RequestException as exc:
                raise MetaFetchError(f"Could not fetch {url}: {exc}") from exc
            except ValueError as exc:
                raise MetaFetchError(f"Could not follow {current}: {exc}") from exc

            try:
                text = body.decode(encoding, errors="replace")
            except LookupError:
                text = body.decode("utf-8", errors="replace")
            try:
                return parse_site_meta(text, final_url)
            except ValueError as exc:
                raise MetaFetchError(f"Could not parse {url}: {exc}") from exc

        raise MetaFetchError(f"Too many redirects fetching {url}")

    def _check_target(self, url: str) -> None:
        try:
            parsed = urlparse(url)
            host = parsed.hostname
            port = parsed.port
        except ValueError as exc:
            raise MetaFetchError(f"Invalid URL: {url}") from exc
        if parsed.scheme not in {"http", "https"} or not host:
            raise MetaFetchError(f"Unsupported URL: {url}")

        try:
            addresses = self._resolve(host, port or (443 if parsed.scheme == "https" else 80))
        except OSError as exc:
            raise MetaFetchError(f"Could not resolve {host}: {exc}") from exc
        if not addresses:
            raise MetaFetchError(f"Could not resolve {host}")
        for address in addresses:
            if not _is_public(address):
                raise MetaFetchError(f"Refusing to fetch {host}: {address} is not a public address")

    def _read_capped(self, resp: requests.Response) -> bytes:
        chunks: List[bytes] = []
        size = 0
        for chunk in resp.iter_content(chunk_size=64 * 1024):
            chunks.append(chunk)
            size += len(chunk)
            if size >= self.max_bytes:
                break
        return b"".join(chunks)[: self.max_bytes]


def parse_site_meta(html: str, base_url: str) -> SiteMeta:
    """Pick the page title and preview image out of an HTML document."""
    parser = _MetaTagParser()
    parser.feed(html)
    parser.close()

    title = (
        parser.meta.get("og:title")
        or parser.meta.get("twitter:title")
        or "".join(parser.title_parts)
    )
    image = parser.meta.get("og:image") or parser.meta.get("twitter:image") or ""
    return SiteMeta(
        title=_WHITESPACE.sub(" ", title).strip(),
        image_url=_absolute_image_url(base_url, image.strip()),
    )


def _absolute_image_url(base_url: str, image: str) -> str:
    # an unusable image reference just means no preview image
    if not image:
        return ""
    try:
        resolved = urljoin(base_url, image)
        scheme = urlparse(resolved).scheme
    except ValueError:
        return ""
    return resolved if scheme in {"http", "https"} else ""


def _resolve_host(host: str, port: int) -> List[str]:
    infos = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    return [info[4][0] for info in infos]


def _is_public(address: str) -> bool:
    try:
        ip = ipaddress.ip_address(address.split("%", 1)[0])
    except ValueError:
        return False
    if ip.version == 6 and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return ip.is_global and not ip.is_multicast


def _declared_charset(resp: requests.Response) -> str:
    # requests assumes ISO-8859-1 for text/* without a charset; most pages are UTF-8
    content_type = (resp.headers.get("Content-Type") or "").lower()
    if "charset=" in content_type and resp.encoding:
        return resp.encoding
    return "utf-8"


class _MetaTagParser(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.meta: Dict[str, str] = {}
        self.title_parts: List[str] = []
        self._in_title = False
        self._seen_title = False

    def handle_starttag(self, tag, attrs):
        if tag == "meta":
            attributes = {key.lower(): value for key, value in attrs if value is not None}
            key = (attributes.get("property") or attributes.get("name") or "").strip().lower()
            content = attributes.get("content")
            # first declaration wins
            if key and content is not None and key not in self.meta:
                self.meta[key] = content
        elif tag == "title" and not self._seen_title:
            self._in_title = True

    def handle_endtag(self, tag):
        if tag == "title" and self._in_title:
            self._in_title = False
            self._seen_title = True

    def handle_data(self, data):
        if self._in_title:
            self.title_parts.append(data)
