"""URL normalization and link filtering for the crawl frontier."""

from enum import Enum
from fnmatch import fnmatchcase
from typing import List, Optional, Sequence
from urllib.parse import urlencode, urljoin, urlsplit, urlunsplit, parse_qsl

DEFAULT_PORTS = {"http": 80, "https": 443}
SEARCH_ENDPOINT = "https://www.google.com/search"
SEARCH_PAGE_SIZE = 10


class CrawlStrategy(str, Enum):
    """Which discovered hosts a crawl may follow."""
    ALL = "all"
    SAME_DOMAIN = "same-domain"
    SAME_HOSTNAME = "same-hostname"
    SAME_ORIGIN = "same-origin"


def normalize_url(
    url: str,
    base_url: Optional[str] = None,
    ignore_query_parameters: bool = False
) -> Optional[str]:
    """Normalize a URL for frontier deduplication.

    Relative URLs are resolved against ``base_url``. Scheme and host are
    lowercased, default ports dropped, an empty path becomes ``/``, query
    parameters are sorted (or dropped) and the fragment is stripped.

    Returns:
        The normalized URL, or None if it is not an http(s) URL with a host
    """
    if not url:
        return None
    url = url.strip()
    if base_url:
        url = urljoin(base_url, url)

    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError:
        return None

    scheme = parts.scheme.lower()
    if scheme not in DEFAULT_PORTS or not parts.hostname:
        return None

    host = parts.hostname.lower()
    if ":" in host:
        host = f"[{host}]"
    netloc = host if port is None or port == DEFAULT_PORTS[scheme] else f"{host}:{port}"

    path = parts.path or "/"
    query = ""
    if not ignore_query_parameters and parts.query:
        query = urlencode(sorted(parse_qsl(parts.query, keep_blank_values=True)))

    return urlunsplit((scheme, netloc, path, query, ""))


def registrable_domain(host: str) -> str:
    """Approximate registrable domain: the last two labels of the host."""
    labels = [label for label in host.lower().split(".") if label]
    if len(labels) <= 2:
        return ".".join(labels)
    return ".".join(labels[-2:])


def passes_strategy(url: str, seed_url: str, strategy: CrawlStrategy) -> bool:
    """Check a normalized candidate against the seed under a crawl strategy."""
    strategy = CrawlStrategy(strategy)
    if strategy == CrawlStrategy.ALL:
        return True

    candidate = urlsplit(url)
    seed = urlsplit(seed_url)
    candidate_host = (candidate.hostname or "").lower()
    seed_host = (seed.hostname or "").lower()

    if strategy == CrawlStrategy.SAME_HOSTNAME:
        return candidate_host == seed_host
    if strategy == CrawlStrategy.SAME_ORIGIN:
        return (candidate.scheme, candidate.netloc) == (seed.scheme, seed.netloc)

    seed_domain = registrable_domain(seed_host)
    return candidate_host == seed_domain or candidate_host.endswith(f".{seed_domain}")


def _path_matches(path: str, pattern: str) -> bool:
    if any(ch in pattern for ch in "*?["):
        return fnmatchcase(path, pattern)
    return path.startswith(pattern)


def passes_path_filters(
    url: str,
    include_paths: Optional[Sequence[str]] = None,
    exclude_paths: Optional[Sequence[str]] = None
) -> bool:
    """Apply include/exclude path patterns to a URL's path.

    Patterns are globs; a pattern without wildcards matches as a prefix.
    Excludes win over includes.
    """
    path = urlsplit(url).path or "/"
    if exclude_paths and any(_path_matches(path, pattern) for pattern in exclude_paths):
        return False
    if include_paths:
        return any(_path_matches(path, pattern) for pattern in include_paths)
    return True


def build_search_url(query: str, page: int = 0, lang: str = "en", offset: int = 0) -> str:
    """Build a web search results URL for one page of results.

    ``offset`` skips that many leading results before the first page.
    """
    params = {
        "q": query,
        "num": SEARCH_PAGE_SIZE,
        "start": offset + page * SEARCH_PAGE_SIZE,
        "hl": lang,
    }
    return f"{SEARCH_ENDPOINT}?{urlencode(params)}"


def search_result_urls(links: Sequence[str], base_url: Optional[str] = None) -> List[str]:
    """Pick the result URLs out of the links on a search results page.

    Redirect links of the form ``/url?q=<target>`` are unwrapped. Links back
    to the search host are navigation and are skipped. Order is kept and
    duplicates dropped.
    """
    search_host = urlsplit(SEARCH_ENDPOINT).hostname
    seen = set()
    results = []
    for link in links:
        url = normalize_url(link, base_url or SEARCH_ENDPOINT)
        if url is None:
            continue
        parts = urlsplit(url)
        if parts.hostname == search_host:
            if parts.path != "/url":
                continue
            target = dict(parse_qsl(parts.query)).get("q")
            url = normalize_url(target) if target else None
            if url is None or urlsplit(url).hostname == search_host:
                continue
        if url not in seen:
            seen.add(url)
            results.append(url)
    return results
