from __future__ import annotations

import logging
import os
import random
from dataclasses import dataclass
from types import MappingProxyType
from typing import List, Mapping, Sequence, Tuple

import requests
from bs4 import BeautifulSoup, NavigableString, Tag
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse, Response

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger("variant_proxy")

app = FastAPI(title="Random Variant Proxy")

VARIANTS_URL_DEFAULT = "https://cfw-takehome.developers.workers.dev/api/variants"
FETCH_TIMEOUT_DEFAULT = 15.0
USER_AGENT_DEFAULT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/115.0 Safari/537.36"
)

VARIANTS_FAILED_MESSAGE = "Failed to fetch webpage variants. Please try again."
VARIANTS_UNREADABLE_MESSAGE = "Failed to read webpage variants. Please try again."
SELECTION_FAILED_MESSAGE = "Failed to request a webpage variant to display. Please try again."
ORIGIN_FAILED_MESSAGE = "Failed to load the selected webpage variant. Please try again."
UNEXPECTED_ERROR_MESSAGE = "Something went wrong while loading this page. Please try again."

# Recomputed or invalidated once the body is rewritten
DROPPED_RESPONSE_HEADERS = {"content-encoding", "transfer-encoding", "content-length"}


# ------------------------------------------------------------------------------
# Errors
# ------------------------------------------------------------------------------

class VariantProxyError(Exception):
    """Base class for every failure raised by the proxy."""


class FetchFailure(VariantProxyError):
    pass


class TransportFailure(FetchFailure):
    pass


class HTTPStatusFailure(FetchFailure):
    def __init__(self, url: str, status_code: int, reason: str) -> None:
        super().__init__(f"An error occurred during a fetch of {url}. Status: {reason}")
        self.url = url
        self.status_code = status_code
        self.reason = reason


class ParseFailure(VariantProxyError):
    pass


class SelectionFailure(VariantProxyError):
    pass


# ------------------------------------------------------------------------------
# Config helpers
# ------------------------------------------------------------------------------

def as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    variants_url: str
    fetch_timeout: float
    user_agent: str


def load_settings() -> Settings:
    timeout = as_float(os.getenv("FETCH_TIMEOUT"), FETCH_TIMEOUT_DEFAULT)
    if timeout <= 0:
        timeout = FETCH_TIMEOUT_DEFAULT
    return Settings(
        variants_url=os.getenv("VARIANTS_URL") or VARIANTS_URL_DEFAULT,
        fetch_timeout=timeout,
        user_agent=os.getenv("PROXY_USER_AGENT") or USER_AGENT_DEFAULT,
    )


# ------------------------------------------------------------------------------
# Fetching
# ------------------------------------------------------------------------------

def check_status(url: str, response: requests.Response) -> requests.Response:
    if not response.ok:
        raise HTTPStatusFailure(url, response.status_code, response.reason or str(response.status_code))
    return response


def fetch_resource(url: str, settings: Settings | None = None) -> requests.Response | None:
    """Fetch ``url`` and return the response, or None if the fetch failed.

    Non-2xx statuses and transport errors are both logged and swallowed here so
    callers only ever have to check for None.
    """
    settings = settings or load_settings()
    try:
        try:
            logger.info("Fetching %s", url)
            response = requests.get(
                url,
                headers={"User-Agent": settings.user_agent},
                timeout=settings.fetch_timeout,
            )
        except requests.RequestException as exc:
            raise TransportFailure(f"An error occurred during a fetch of {url}: {exc}") from exc
        return check_status(url, response)
    except FetchFailure as exc:
        logger.warning("%s", exc)
    return None


def fetch_variants(settings: Settings | None = None):
    """Return the ``variants`` field of the variants document, or None if it
    could not be fetched. Raises ParseFailure on a body that is not a JSON object."""
    settings = settings or load_settings()
    response = fetch_resource(settings.variants_url, settings)
    if response is None:
        return None

    try:
        data = response.json()
    except ValueError as exc:
        raise ParseFailure(f"Variants body from {settings.variants_url} is not valid JSON") from exc
    if not isinstance(data, dict):
        raise ParseFailure(f"Unexpected variants document from {settings.variants_url}: {data!r}")
    return data.get("variants")


def select_url(webpages) -> str | None:
    if not isinstance(webpages, (list, tuple)) or not webpages:
        return None
    index = random.randrange(len(webpages))
    return webpages[index]


def require_url(webpages) -> str:
    url = select_url(webpages)
    if not url:
        raise SelectionFailure(f"No webpage variant available in {webpages!r}")
    return url


def request_webpage(url: str, settings: Settings | None = None) -> requests.Response | None:
    return fetch_resource(url, settings)


# ------------------------------------------------------------------------------
# HTML rewriting
# ------------------------------------------------------------------------------

@dataclass(frozen=True)
class RewriteRule:
    new_inner_content: str
    attributes_to_replace: Tuple[Tuple[str, str], ...] = ()


DEFAULT_RULES: Mapping[str, RewriteRule] = MappingProxyType(
    {
        "title": RewriteRule(new_inner_content="Tony Chen's Custom Variant"),
        "description": RewriteRule(
            new_inner_content=(
                "This is my custom variant description! "
                "I really enjoyed working on this internship assignment."
            ),
        ),
        "url": RewriteRule(
            new_inner_content="Go to Tony's LinkedIn",
            attributes_to_replace=(("href", "https://www.linkedin.com/in/tonychen-dev/"),),
        ),
    }
)

TITLE_PREFIX = "Custom "
TARGET_ATTRIBUTE = "id"


def set_inner_content(element: Tag, text: str) -> None:
    element.clear(decompose=True)
    element.append(NavigableString(text))


class ElementHandler:
    """Per-element callback: prefixes <title> tags and swaps the content of
    elements whose id has a rule."""

    def __init__(self, rules: Mapping[str, RewriteRule] = DEFAULT_RULES) -> None:
        self.rules = rules

    def element(self, element: Tag) -> None:
        if element.name == "title":
            element.insert(0, NavigableString(TITLE_PREFIX))

        element_id = element.get(TARGET_ATTRIBUTE)
        if not isinstance(element_id, str):
            return
        rule = self.rules.get(element_id)
        if rule is None:
            return

        set_inner_content(element, rule.new_inner_content)
        for name, value in rule.attributes_to_replace:
            element[name] = value


class HTMLRewriter:
    def __init__(self) -> None:
        self._handlers: List[Tuple[str, ElementHandler]] = []

    def on(self, selector: str, handler: ElementHandler) -> "HTMLRewriter":
        self._handlers.append((selector, handler))
        return self

    def transform(self, markup: str | bytes) -> str:
        """Apply the registered handlers and return the rewritten document.

        Bytes are decoded by BeautifulSoup itself, which honours a
        ``<meta charset>`` declaration in the document.
        """
        soup = BeautifulSoup(markup, "html.parser")
        for selector, handler in self._handlers:
            for element in soup.select(selector):
                # removed along with an ancestor's inner content
                if element.decomposed:
                    continue
                handler.element(element)
        return str(soup)


def build_rewriter(rules: Mapping[str, RewriteRule] = DEFAULT_RULES) -> HTMLRewriter:
    return HTMLRewriter().on("*", ElementHandler(rules))


# ------------------------------------------------------------------------------
# Request handling
# ------------------------------------------------------------------------------

def passthrough_headers(upstream: requests.Response, drop: Sequence[str] = ()) -> List[Tuple[str, str]]:
    # urllib3 keeps repeated headers (Set-Cookie) apart; requests merges them
    raw_headers = getattr(upstream.raw, "headers", None)
    if raw_headers is not None and hasattr(raw_headers, "iteritems"):
        pairs = list(raw_headers.iteritems())
    else:
        pairs = list(upstream.headers.items())
    excluded = DROPPED_RESPONSE_HEADERS | {name.lower() for name in drop}
    return [(key, value) for key, value in pairs if key.lower() not in excluded]


def build_response(
    content: str | bytes,
    status_code: int,
    headers: Sequence[Tuple[str, str]],
    media_type: str | None = None,
) -> Response:
    response = Response(content=content, status_code=status_code, media_type=media_type)
    for key, value in headers:
        response.headers.append(key, value)
    return response


def is_html(upstream: requests.Response) -> bool:
    content_type = upstream.headers.get("Content-Type", "").lower()
    return not content_type or "html" in content_type


def html_markup(upstream: requests.Response) -> str | bytes:
    # without a header charset requests falls back to ISO-8859-1 for text/*
    if "charset=" in upstream.headers.get("Content-Type", "").lower():
        return upstream.text
    return upstream.content


def handle_request(
    settings: Settings | None = None,
    rules: Mapping[str, RewriteRule] = DEFAULT_RULES,
) -> Response:
    settings = settings or load_settings()

    try:
        webpage_variants = fetch_variants(settings)
    except ParseFailure as exc:
        logger.warning("%s", exc)
        return PlainTextResponse(VARIANTS_UNREADABLE_MESSAGE)
    if webpage_variants is None:
        return PlainTextResponse(VARIANTS_FAILED_MESSAGE)

    try:
        url = require_url(webpage_variants)
    except SelectionFailure as exc:
        logger.warning("%s", exc)
        return PlainTextResponse(SELECTION_FAILED_MESSAGE)
    logger.info("Selected webpage variant %s", url)

    upstream_response = request_webpage(url, settings)
    if upstream_response is None:
        return PlainTextResponse(ORIGIN_FAILED_MESSAGE)

    if not is_html(upstream_response):
        return build_response(
            upstream_response.content,
            upstream_response.status_code,
            passthrough_headers(upstream_response),
        )

    rendered = build_rewriter(rules).transform(html_markup(upstream_response))
    return build_response(
        rendered,
        upstream_response.status_code,
        passthrough_headers(upstream_response, drop=["content-type"]),
        media_type="text/html; charset=utf-8",
    )


# ------------------------------------------------------------------------------
# Proxy endpoint
# ------------------------------------------------------------------------------

PROXIED_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "TRACE"]


@app.api_route("/{path:path}", methods=PROXIED_METHODS)
def proxy_variant(path: str) -> Response:
    """Serve a variant for every standard HTTP method except CONNECT."""
    try:
        return handle_request()
    except Exception as exc:
        logger.exception("Error in proxy_variant for /%s: %s", path, exc)
        return PlainTextResponse(UNEXPECTED_ERROR_MESSAGE, status_code=500)


# expose ASGI app
application = app

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
