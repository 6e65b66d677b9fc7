"""Docbridge MCP server: markdown documentation export for Notion and Confluence.

Provides documentation tooling via MCP tools:
- docs_generate: Generate markdown docs through Groq/Gemini with failover
- docs_analyze: Report input size and whether it will be optimized
- notion_export / confluence_export: Convert markdown and deliver it
- notion_search / confluence_search: Find pages to export into

Credentials: Passed via --*-token-file / --*-key-file CLI arguments at startup.
"""

import asyncio
import html
import logging
import math
import random
import re
import time
from base64 import b64encode
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union
from urllib.parse import parse_qs, urlparse

import httpx
import parsy as P
from mcp.server.fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

logger = logging.getLogger("docbridge-mcp")

_async_client: Optional[httpx.AsyncClient] = None


async def _get_async_client() -> httpx.AsyncClient:
    """Get or create the shared async HTTP client."""
    global _async_client
    if _async_client is None or _async_client.is_closed:
        _async_client = httpx.AsyncClient(timeout=30.0)
    return _async_client


# =============================================================================
# Credential Management
# =============================================================================

_notion_token: Optional[str] = None
_groq_api_key: Optional[str] = None
_gemini_api_key: Optional[str] = None


@dataclass
class ConfluenceCredentials:
    """Confluence Cloud site and API token (basic auth)."""
    domain: str
    email: str
    token: str


_confluence_credentials: Optional[ConfluenceCredentials] = None


def _get_notion_token() -> str:
    """Get the Notion token (set via --notion-token-file CLI arg)."""
    if _notion_token is None:
        raise RuntimeError(
            "No Notion token. Pass --notion-token-file <path> on the command line."
        )
    return _notion_token


def _get_confluence_credentials() -> ConfluenceCredentials:
    """Get Confluence credentials (set via --confluence-* CLI args)."""
    if _confluence_credentials is None:
        raise RuntimeError(
            "Confluence is not configured. Pass --confluence-domain, "
            "--confluence-email and --confluence-token-file on the command line."
        )
    return _confluence_credentials


# =============================================================================
# Error Taxonomy
# =============================================================================


class DocBridgeError(Exception):
    """Base error carrying a classification code and an HTTP-style status."""

    code = "internal_error"
    status = 500

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        hint: str | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status
        self.hint = hint
        self.cause = cause

    def to_dict(self) -> dict:
        """Convert to error response dict."""
        result: dict[str, Any] = {
            "code": self.code,
            "status": self.status,
            "message": self.message,
        }
        if self.hint:
            result["hint"] = self.hint
        return result


class ValidationError(DocBridgeError):
    """Malformed builder input or a 400-class remote rejection."""
    code = "validation"
    status = 400


class PermissionDeniedError(DocBridgeError):
    """403-class rejection; the integration lacks access."""
    code = "permission"
    status = 403


class RateLimitError(DocBridgeError):
    """429 that survived every retry attempt."""
    code = "rate_limit"
    status = 429

    def __init__(
        self,
        message: str,
        *,
        retry_after: float | None = None,
        details: Any = None,
        attempts: list["RetryAttempt"] | None = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after
        self.details = details
        self.attempts = attempts or []

    def to_dict(self) -> dict:
        result = super().to_dict()
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        return result


class UpstreamUnavailableError(DocBridgeError):
    """5xx or timeout after retries were exhausted."""
    code = "upstream_unavailable"
    status = 502

    def __init__(
        self,
        message: str,
        *,
        last_status: int | None = None,
        attempts: list["RetryAttempt"] | None = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.last_status = last_status
        self.attempts = attempts or []


class VersionConflictError(DocBridgeError):
    """409 on an optimistic-concurrency update. Never retried."""
    code = "version_conflict"
    status = 409


class ProviderUnavailableError(DocBridgeError):
    """No generation backend configured, or all configured backends failed."""
    code = "provider_unavailable"
    status = 503


class ProviderError(DocBridgeError):
    """A single generation backend failed."""
    code = "provider_error"
    status = 502

    def __init__(self, provider: str, message: str, *, retry_after: float | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.provider = provider
        self.retry_after = retry_after


class DeliveryError(DocBridgeError):
    """Chunked delivery failure; keeps the underlying classification."""

    def __init__(
        self,
        message: str,
        *,
        code: str,
        status: int,
        chunk_index: int | None = None,
        target_id: str | None = None,
        retry_after: float | None = None,
        **kwargs,
    ):
        super().__init__(message, status=status, **kwargs)
        self.code = code
        self.chunk_index = chunk_index
        self.target_id = target_id
        self.retry_after = retry_after

    @classmethod
    def from_error(
        cls,
        error: DocBridgeError,
        chunk_index: int | None = None,
        chunk_count: int | None = None,
        target_id: str | None = None,
    ) -> "DeliveryError":
        message = error.message
        if chunk_index is not None and chunk_count:
            message = f"{message} (chunk {chunk_index + 1}/{chunk_count})"
        return cls(
            message,
            code=error.code,
            status=error.status,
            hint=error.hint,
            cause=error,
            chunk_index=chunk_index,
            target_id=target_id,
            retry_after=getattr(error, "retry_after", None),
        )


def _safe_json(response: httpx.Response) -> Any:
    """Decode a JSON body, returning None when it isn't JSON."""
    try:
        return response.json()
    except ValueError:
        return None


def _http_error_detail(response: httpx.Response, max_len: int = 300) -> str:
    """Extract a short human-readable detail from an error response.

    Prefers the platform's JSON ``message`` (Notion, Confluence) or
    ``error.message`` (Gemini, Groq) and falls back to the raw body.
    """
    data = _safe_json(response)
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])[:max_len]
        if data.get("message"):
            return str(data["message"])[:max_len]
        errors = data.get("errors")
        if isinstance(errors, list) and errors:
            first = errors[0]
            if isinstance(first, dict):
                return str(first.get("title") or first.get("message") or first)[:max_len]
    return response.text[:max_len] or f"HTTP {response.status_code}"


def classify_response_error(response: httpx.Response, platform: str = "Remote") -> DocBridgeError:
    """Map a non-success response to the error taxonomy.

    400/422 -> validation, 401/403/404 -> permission, 409 -> version_conflict,
    429 -> rate_limit, >=500 -> upstream_unavailable, other 4xx -> validation.
    """
    status = response.status_code
    detail = _http_error_detail(response)

    if status in (400, 422):
        return ValidationError(f"{platform} validation error: {detail}", status=status)
    if status in (401, 403):
        return PermissionDeniedError(
            f"{platform} permission error: {detail}",
            status=status,
            hint=HINTS["missing_capability"],
        )
    if status == 404:
        return PermissionDeniedError(
            f"{platform} object not found: {detail}",
            status=status,
            hint=HINTS["ref_gone"],
        )
    if status == 409:
        return VersionConflictError(
            f"{platform} version conflict: {detail}",
            hint=HINTS["version_conflict"],
        )
    if status == 429:
        return RateLimitError(
            f"{platform} rate limit exceeded: {detail}",
            retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            details=_safe_json(response),
            hint=HINTS["rate_limited"],
        )
    if status >= 500:
        return UpstreamUnavailableError(
            f"{platform} unavailable: {detail}",
            status=status,
            last_status=status,
        )
    return ValidationError(f"{platform} rejected the request: {detail}", status=status)


# =============================================================================
# Retrying HTTP Client
# =============================================================================


@dataclass
class RetryPolicy:
    """Per-call retry configuration. All durations are in seconds."""
    timeout: float = 12.0  # per attempt, not per operation
    attempts: int = 3
    base_delay: float = 0.4
    max_delay: float = 4.0


DEFAULT_RETRY_POLICY = RetryPolicy()


@dataclass
class RetryAttempt:
    """Diagnostic record of a single attempt."""
    attempt_number: int
    started_at: float
    duration_ms: float
    outcome: str


# Longest server-requested wait honored between attempts
MAX_RETRY_AFTER = 120.0

# Gemini reports quota waits in the body: "... Please retry in 12.3s."
_RETRY_IN_PATTERN = re.compile(r"retry in ([\d.]+)s")


def _default_retry_on(response: httpx.Response) -> bool:
    return response.status_code >= 500 or response.status_code == 429


def _parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header given in seconds, capped at MAX_RETRY_AFTER."""
    if value is None:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    if not math.isfinite(seconds):
        return None
    return min(max(seconds, 0.0), MAX_RETRY_AFTER)


def _retry_hint_from_body(details: Any) -> float | None:
    """Find a 'retry in Ns' hint inside an upstream error body."""
    if not isinstance(details, dict):
        return None
    error = details.get("error")
    message = error.get("message", "") if isinstance(error, dict) else ""
    match = _RETRY_IN_PATTERN.search(message or "")
    if match:
        try:
            return min(float(math.ceil(float(match.group(1)))), MAX_RETRY_AFTER)
        except ValueError:
            return None
    return None


def _compute_retry_delay(
    attempt: int,
    policy: RetryPolicy,
    retry_after: float | None = None
) -> float:
    """Compute the wait before the next attempt.

    A server-provided Retry-After wins outright. Otherwise a random value in
    [0, base * 2^attempt] is drawn and clamped into [base, max].

    Args:
        attempt: Current attempt index (0-indexed).
        policy: Retry policy supplying base/max delay.
        retry_after: Optional Retry-After value from a 429 response.

    Returns:
        Delay in seconds.
    """
    if retry_after is not None:
        return retry_after
    ceiling = policy.base_delay * (2 ** attempt)
    jittered = random.uniform(0, ceiling)
    return min(max(jittered, policy.base_delay), policy.max_delay)


class RetryingHttpClient:
    """Timeout, retry and backoff around single outbound HTTP calls.

    Only timeouts, transport errors and responses accepted by the retry
    predicate (5xx and 429 by default) are retried. Every other response is
    returned to the caller untouched, client errors included.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._client = client
        self.policy = policy or DEFAULT_RETRY_POLICY
        self._sleep = sleep

    def build_request(self, method: str, url: str, **kwargs) -> httpx.Request:
        return self._client.build_request(method, url, **kwargs)

    async def send(
        self,
        request: httpx.Request,
        policy: RetryPolicy | None = None,
        retry_on: Callable[[httpx.Response], bool] | None = None,
    ) -> httpx.Response:
        """Send a request, retrying retryable failures.

        Raises:
            RateLimitError: The last observed response was a 429.
            UpstreamUnavailableError: Attempts exhausted for any other reason.
        """
        policy = policy or self.policy
        retry_on = retry_on or _default_retry_on
        label = f"{request.method} {request.url.host}{request.url.path}"
        # Transport deadline follows the policy, not the shared client default
        request.extensions["timeout"] = httpx.Timeout(policy.timeout).as_dict()

        attempts: list[RetryAttempt] = []
        last_error: BaseException | None = None
        last_response: httpx.Response | None = None

        for attempt in range(policy.attempts):
            started_at = time.time()
            t0 = time.monotonic()
            retry_after = None

            try:
                response = await asyncio.wait_for(
                    self._client.send(request), timeout=policy.timeout
                )
            except asyncio.TimeoutError as e:
                last_error = e
                outcome = "timeout"
                logger.warning(
                    f"{label} timed out after {policy.timeout:.1f}s "
                    f"(attempt {attempt + 1}/{policy.attempts})"
                )
            except httpx.TransportError as e:
                last_error = e
                outcome = f"transport error: {type(e).__name__}"
                logger.warning(
                    f"{label} failed with {type(e).__name__}: {e} "
                    f"(attempt {attempt + 1}/{policy.attempts})"
                )
            else:
                last_response = response
                outcome = f"status {response.status_code}"
                if not retry_on(response):
                    attempts.append(RetryAttempt(
                        attempt + 1, started_at, (time.monotonic() - t0) * 1000, outcome
                    ))
                    logger.debug(f"{label} -> {response.status_code} (attempt {attempt + 1})")
                    return response

                if response.status_code == 429:
                    retry_after = _parse_retry_after(response.headers.get("Retry-After"))
                logger.warning(
                    f"{label} returned {response.status_code} "
                    f"(attempt {attempt + 1}/{policy.attempts})"
                )

            attempts.append(RetryAttempt(
                attempt + 1, started_at, (time.monotonic() - t0) * 1000, outcome
            ))

            if attempt < policy.attempts - 1:
                delay = _compute_retry_delay(attempt, policy, retry_after)
                logger.info(f"Waiting {delay:.2f}s before retrying {label}")
                await self._sleep(delay)

        for record in attempts:
            logger.debug(f"{label} attempt {record.attempt_number}: {record.outcome} "
                         f"in {record.duration_ms:.0f}ms")
        raise self._exhausted_error(policy, attempts, last_error, last_response)

    @staticmethod
    def _exhausted_error(
        policy: RetryPolicy,
        attempts: list[RetryAttempt],
        last_error: BaseException | None,
        last_response: httpx.Response | None,
    ) -> DocBridgeError:
        if last_response is not None and last_response.status_code == 429:
            details = _safe_json(last_response)
            retry_after = _parse_retry_after(last_response.headers.get("Retry-After"))
            if retry_after is None:
                retry_after = _retry_hint_from_body(details)

            message = "Rate limit exceeded."
            if retry_after is not None:
                message += f" Please wait {math.ceil(retry_after)} seconds and try again."
            else:
                message += " Please wait and try again later."
            upstream = _http_error_detail(last_response)
            if upstream and upstream != "HTTP 429":
                message += f" Upstream: {upstream}"
            return RateLimitError(
                message,
                retry_after=retry_after,
                details=details,
                attempts=attempts,
                hint=HINTS["rate_limited"],
                cause=last_error,
            )

        last_status = last_response.status_code if last_response is not None else None
        message = f"Upstream request failed after {policy.attempts} attempt(s)"
        if last_status is not None:
            message += f" (last status {last_status})"
        elif last_error is not None:
            message += f" ({type(last_error).__name__})"
        return UpstreamUnavailableError(
            message,
            last_status=last_status,
            attempts=attempts,
            cause=last_error,
        )


_retrying_client: Optional[RetryingHttpClient] = None


async def _get_retrying_client() -> RetryingHttpClient:
    """Get or create the retrying wrapper around the shared client."""
    global _retrying_client
    client = await _get_async_client()
    if _retrying_client is None or _retrying_client._client is not client:
        _retrying_client = RetryingHttpClient(client)
    return _retrying_client


# =============================================================================
# Text Chunking
# =============================================================================

# Notion caps a single rich_text content string at 2000 characters
NOTION_SPAN_LIMIT = 2000
CONFLUENCE_SPAN_LIMIT = 2000


def split_long_text(text: str, max_length: int = NOTION_SPAN_LIMIT) -> list[str]:
    """Split text into segments no longer than max_length.

    Cuts at the rightmost newline in the last 20% of the window, else the
    rightmost space there, else hard at max_length. The remainder is
    left-stripped before the next cut.

    Args:
        text: Text to split.
        max_length: Maximum segment length (>= 1).

    Returns:
        List of segments. Empty input yields [""].
    """
    if max_length < 1:
        raise ValueError(f"max_length must be >= 1, got {max_length}")
    if not text or len(text) <= max_length:
        return [text or ""]

    chunks: list[str] = []
    remaining = text
    window_start = max_length * 0.8

    while remaining:
        if len(remaining) <= max_length:
            chunks.append(remaining)
            break

        split_at = max_length
        newline_index = remaining.rfind("\n", 0, max_length + 1)
        space_index = remaining.rfind(" ", 0, max_length + 1)
        if newline_index > window_start:
            split_at = newline_index
        elif space_index > window_start:
            split_at = space_index

        chunks.append(remaining[:split_at])
        remaining = remaining[split_at:].lstrip()

    return chunks


# =============================================================================
# Inline Span Parser (Parsy-based)
# =============================================================================


@dataclass
class Span:
    """A run of inline text with formatting annotations."""
    text: str
    bold: bool = False
    italic: bool = False
    code: bool = False
    strikethrough: bool = False
    link_url: Optional[str] = None


def _is_plain(span: Span) -> bool:
    return not (span.bold or span.italic or span.code
                or span.strikethrough or span.link_url)


def _merge_plain_spans(spans: list[Span]) -> list[Span]:
    """Merge adjacent unannotated spans. Annotated spans stay separate."""
    merged: list[Span] = []
    for span in spans:
        if merged and _is_plain(span) and _is_plain(merged[-1]):
            merged[-1].text += span.text
        else:
            merged.append(span)
    return merged


# Characters that can start a recognizer (used for literal text boundaries)
_SPECIAL_CHARS = set('[`*_')


def _make_inline_parser():
    """Build the inline span parser using parsy combinators.

    At every position the recognizers are tried in a fixed order (link, code,
    bold, italic); the first position where any of them matches is the
    leftmost match, so scanning left to right gives leftmost-wins with ties
    broken by recognizer order. The captured inner text is kept literal.
    """

    @P.generate
    def link():
        yield P.string('[')
        text = yield P.regex(r'[^\]]+')
        yield P.string('](')
        url = yield P.regex(r'[^)]+')
        yield P.string(')')
        return Span(text=text, link_url=url)

    code = (
        P.string('`') >> P.regex(r'[^`]+') << P.string('`')
    ).map(lambda t: Span(text=t, code=True))

    bold = (
        P.string('**') >> P.regex(r'[^*]+') << P.string('**')
    ).map(lambda t: Span(text=t, bold=True))

    bold_underscore = (
        P.string('__') >> P.regex(r'[^_]+') << P.string('__')
    ).map(lambda t: Span(text=t, bold=True))

    italic = (
        P.string('*') >> P.regex(r'[^*]+') << P.string('*')
    ).map(lambda t: Span(text=t, italic=True))

    italic_underscore = (
        P.string('_') >> P.regex(r'[^_]+') << P.string('_')
    ).map(lambda t: Span(text=t, italic=True))

    literal_run = P.test_char(lambda c: c not in _SPECIAL_CHARS, 'literal').at_least(1).map(
        lambda chars: Span(text=''.join(chars))
    )

    # A special char that didn't start a recognizer is plain text
    special_fallback = P.any_char.map(lambda c: Span(text=c))

    return (
        link |
        code |
        bold |
        bold_underscore |
        italic |
        italic_underscore |
        literal_run |
        special_fallback
    ).many()


_inline_parser = _make_inline_parser()


def parse_inline_markdown(text: Optional[str], max_length: int = NOTION_SPAN_LIMIT) -> list[Span]:
    """Parse a line of markdown into annotated spans.

    The text is split with split_long_text first and each segment is parsed
    on its own, so no span crosses a segment boundary.

    Args:
        text: Markdown text (may be empty or None).
        max_length: Target per-span character cap.

    Returns:
        List of spans; never empty.
    """
    if not text:
        return [Span(text='')]

    spans: list[Span] = []
    for segment in split_long_text(text, max_length):
        try:
            spans.extend(_merge_plain_spans(_inline_parser.parse(segment)))
        except P.ParseError as e:
            logger.warning(f"Inline formatting parse error: {e}")
            spans.append(Span(text=segment))

    return spans or [Span(text='')]


# =============================================================================
# Block Model
# =============================================================================


@dataclass
class Heading:
    level: int  # 1..3
    spans: list[Span]


@dataclass
class Paragraph:
    spans: list[Span]


@dataclass
class Code:
    language: str  # raw fence token, lowercased; "" when absent
    text: str


@dataclass
class BulletItem:
    spans: list[Span]


@dataclass
class NumberedItem:
    spans: list[Span]


@dataclass
class Quote:
    spans: list[Span]


@dataclass
class Divider:
    pass


@dataclass
class Table:
    column_count: int
    rows: list[list[list[Span]]]  # rows[0] is the header row


Block = Union[Heading, Paragraph, Code, BulletItem, NumberedItem, Quote, Divider, Table]


# =============================================================================
# Markdown Line Classifier
# =============================================================================

FENCE_PREFIX = '```'
HEADING_PATTERN = re.compile(r'^(#{1,3})(?: (.*))?$')  # bare "#" is an empty heading
BULLET_PATTERN = re.compile(r'^[-*] (.*)$')
NUMBERED_PATTERN = re.compile(r'^\d+\. (.*)$')
QUOTE_PATTERN = re.compile(r'^> (.*)$')
DIVIDER_LINES = {'---', '***', '___'}
TABLE_SEPARATOR_CELL = re.compile(r'^:?-{3,}:?$')


def _split_table_cells(line: str) -> list[str]:
    """Split a pipe-delimited row into stripped cells."""
    stripped = line.strip()
    if stripped.startswith('|'):
        stripped = stripped[1:]
    if stripped.endswith('|'):
        stripped = stripped[:-1]
    return [cell.strip() for cell in stripped.split('|')]


def _is_blank(lines: list[str], index: int) -> bool:
    return not lines[index].strip()


def _is_fence(lines: list[str], index: int) -> bool:
    return lines[index].strip().startswith(FENCE_PREFIX)


def _is_table_start(lines: list[str], index: int) -> bool:
    if index + 1 >= len(lines):
        return False
    header, separator = lines[index].strip(), lines[index + 1].strip()
    if not (header.startswith('|') and separator.startswith('|')):
        return False
    header_cells = _split_table_cells(header)
    separator_cells = _split_table_cells(separator)
    return (
        len(header_cells) >= 2
        and len(separator_cells) == len(header_cells)
        and all(TABLE_SEPARATOR_CELL.match(cell) for cell in separator_cells)
    )


def _is_heading(lines: list[str], index: int) -> bool:
    return HEADING_PATTERN.match(lines[index].strip()) is not None


def _is_divider(lines: list[str], index: int) -> bool:
    return lines[index].strip() in DIVIDER_LINES


def _is_bullet(lines: list[str], index: int) -> bool:
    return BULLET_PATTERN.match(lines[index].strip()) is not None


def _is_numbered(lines: list[str], index: int) -> bool:
    return NUMBERED_PATTERN.match(lines[index].strip()) is not None


def _is_quote(lines: list[str], index: int) -> bool:
    return QUOTE_PATTERN.match(lines[index].strip()) is not None


def _skip_blank(lines, index, max_length):
    return None, index + 1


def _consume_code(lines, index, max_length):
    tokens = lines[index].strip()[len(FENCE_PREFIX):].split()
    language = tokens[0].lower() if tokens else ''
    body: list[str] = []
    index += 1
    while index < len(lines) and not lines[index].strip().startswith(FENCE_PREFIX):
        body.append(lines[index])
        index += 1
    # Unterminated fences run to the end of the document
    return Code(language=language, text='\n'.join(body)), index + 1


def _consume_table(lines, index, max_length):
    header = _split_table_cells(lines[index])
    column_count = len(header)
    raw_rows = [header]
    index += 2  # header + separator
    while index < len(lines) and lines[index].strip().startswith('|'):
        raw_rows.append(_split_table_cells(lines[index]))
        index += 1

    rows = []
    for cells in raw_rows:
        # Lossy normalization: pad short rows, truncate long ones
        cells = cells[:column_count] + [''] * (column_count - len(cells))
        rows.append([parse_inline_markdown(cell, max_length) for cell in cells])
    return Table(column_count=column_count, rows=rows), index


def _consume_heading(lines, index, max_length):
    match = HEADING_PATTERN.match(lines[index].strip())
    level = len(match.group(1))
    return Heading(level=level, spans=parse_inline_markdown(match.group(2), max_length)), index + 1


def _consume_divider(lines, index, max_length):
    return Divider(), index + 1


def _consume_bullet(lines, index, max_length):
    text = BULLET_PATTERN.match(lines[index].strip()).group(1)
    return BulletItem(spans=parse_inline_markdown(text, max_length)), index + 1


def _consume_numbered(lines, index, max_length):
    text = NUMBERED_PATTERN.match(lines[index].strip()).group(1)
    return NumberedItem(spans=parse_inline_markdown(text, max_length)), index + 1


def _consume_quote(lines, index, max_length):
    text = QUOTE_PATTERN.match(lines[index].strip()).group(1)
    return Quote(spans=parse_inline_markdown(text, max_length)), index + 1


def _consume_paragraph(lines, index, max_length):
    return Paragraph(spans=parse_inline_markdown(lines[index].strip(), max_length)), index + 1


# Line rules in precedence order (first match wins). Dividers precede bullets
# so "***" is never read as a list item; tables precede everything but code.
LINE_RULES = [
    (_is_blank, _skip_blank),
    (_is_fence, _consume_code),
    (_is_table_start, _consume_table),
    (_is_heading, _consume_heading),
    (_is_divider, _consume_divider),
    (_is_bullet, _consume_bullet),
    (_is_numbered, _consume_numbered),
    (_is_quote, _consume_quote),
    (lambda lines, index: True, _consume_paragraph),
]


def parse_markdown_blocks(markdown: str, max_span_length: int = NOTION_SPAN_LIMIT) -> list[Block]:
    """Classify markdown line by line into blocks, in document order.

    Args:
        markdown: The markdown document.
        max_span_length: Per-span cap handed to the inline parser.

    Returns:
        List of blocks. Blank lines separate blocks without producing one.

    Raises:
        ValidationError: If markdown is not a string.
    """
    if not isinstance(markdown, str):
        raise ValidationError(
            f"Markdown content must be a string, got {type(markdown).__name__}"
        )

    lines = markdown.splitlines()
    blocks: list[Block] = []
    index = 0
    while index < len(lines):
        for predicate, handler in LINE_RULES:
            if predicate(lines, index):
                block, index = handler(lines, index, max_span_length)
                if block is not None:
                    blocks.append(block)
                break
    return blocks


# =============================================================================
# Notion Block Builder
# =============================================================================

NOTION_PLAIN_TEXT_LANGUAGE = "plain text"

NOTION_LANGUAGE_ALIASES = {
    'javascript': 'javascript',
    'js': 'javascript',
    'typescript': 'typescript',
    'ts': 'typescript',
    'python': 'python',
    'py': 'python',
    'sql': 'sql',
    'bash': 'bash',
    'sh': 'shell',
    'shell': 'shell',
    'json': 'json',
    'yaml': 'yaml',
    'yml': 'yaml',
    'java': 'java',
    'cpp': 'c++',
    'c': 'c',
    'go': 'go',
    'rust': 'rust',
    'ruby': 'ruby',
    'php': 'php',
}


def spans_to_notion_rich_text(spans: list[Span]) -> list[dict]:
    """Convert spans to a Notion API rich_text array.

    Empty spans are dropped, so an empty cell or paragraph becomes [].
    """
    result = []
    for span in spans:
        if not span.text:
            continue

        obj: dict = {
            "type": "text",
            "text": {"content": span.text}
        }
        if span.link_url:
            obj["text"]["link"] = {"url": span.link_url}

        # Add annotations if any are non-default
        annotations = {}
        if span.bold:
            annotations["bold"] = True
        if span.italic:
            annotations["italic"] = True
        if span.strikethrough:
            annotations["strikethrough"] = True
        if span.code:
            annotations["code"] = True
        if annotations:
            obj["annotations"] = annotations

        result.append(obj)
    return result


class NotionBlockBuilder:
    """Build Notion API block objects from markdown."""

    def __init__(self, span_limit: int = NOTION_SPAN_LIMIT):
        self.span_limit = span_limit

    def build(self, markdown: str) -> list[dict]:
        return [self.render_block(block) for block in parse_markdown_blocks(markdown, self.span_limit)]

    def render_block(self, block: Block) -> dict:
        if isinstance(block, Heading):
            block_type = f"heading_{block.level}"
            return self._rich_text_block(block_type, block.spans)

        elif isinstance(block, Paragraph):
            return self._rich_text_block("paragraph", block.spans)

        elif isinstance(block, BulletItem):
            return self._rich_text_block("bulleted_list_item", block.spans)

        elif isinstance(block, NumberedItem):
            return self._rich_text_block("numbered_list_item", block.spans)

        elif isinstance(block, Quote):
            return self._rich_text_block("quote", block.spans)

        elif isinstance(block, Divider):
            return {"object": "block", "type": "divider", "divider": {}}

        elif isinstance(block, Code):
            # Code is sliced exactly; whitespace at cut points is content
            text = block.text
            pieces = [text[i:i + self.span_limit] for i in range(0, len(text), self.span_limit)]
            return {
                "object": "block",
                "type": "code",
                "code": {
                    "rich_text": [{"type": "text", "text": {"content": piece}} for piece in pieces],
                    "language": NOTION_LANGUAGE_ALIASES.get(block.language, NOTION_PLAIN_TEXT_LANGUAGE),
                }
            }

        elif isinstance(block, Table):
            return {
                "object": "block",
                "type": "table",
                "table": {
                    "table_width": block.column_count,
                    "has_column_header": True,
                    "has_row_header": False,
                    "children": [
                        {
                            "object": "block",
                            "type": "table_row",
                            "table_row": {"cells": [spans_to_notion_rich_text(cell) for cell in row]},
                        }
                        for row in block.rows
                    ],
                }
            }

        raise TypeError(f"Unsupported block: {type(block).__name__}")

    @staticmethod
    def _rich_text_block(block_type: str, spans: list[Span]) -> dict:
        return {
            "object": "block",
            "type": block_type,
            block_type: {"rich_text": spans_to_notion_rich_text(spans)},
        }


# =============================================================================
# Confluence Storage Builder
# =============================================================================

CONFLUENCE_PLAIN_TEXT_LANGUAGE = "none"

# Names understood by the Confluence code macro
CONFLUENCE_LANGUAGE_ALIASES = {
    'javascript': 'js',
    'js': 'js',
    'typescript': 'typescript',
    'ts': 'typescript',
    'python': 'py',
    'py': 'py',
    'sql': 'sql',
    'bash': 'bash',
    'sh': 'bash',
    'shell': 'bash',
    'json': 'json',
    'yaml': 'yml',
    'yml': 'yml',
    'xml': 'xml',
    'html': 'xml',
    'css': 'css',
    'java': 'java',
    'cpp': 'cpp',
    'go': 'go',
    'ruby': 'ruby',
    'php': 'php',
}


def _escape_xml(text: str) -> str:
    return html.escape(text, quote=True)


def spans_to_storage(spans: list[Span]) -> str:
    """Render spans as storage-format inline XHTML."""
    parts = []
    for span in spans:
        content = _escape_xml(span.text)
        if span.code:
            content = f"<code>{content}</code>"
        if span.bold:
            content = f"<strong>{content}</strong>"
        if span.italic:
            content = f"<em>{content}</em>"
        if span.strikethrough:
            content = f"<s>{content}</s>"
        if span.link_url:
            content = f'<a href="{_escape_xml(span.link_url)}">{content}</a>'
        parts.append(content)
    return "".join(parts)


class ConfluenceStorageBuilder:
    """Build Confluence storage-format XHTML from markdown.

    Consecutive list items of the same family are grouped into one list
    element; every other block renders on its own line.
    """

    LIST_TAGS = {BulletItem: 'ul', NumberedItem: 'ol'}

    def __init__(self, span_limit: int = CONFLUENCE_SPAN_LIMIT):
        self.span_limit = span_limit

    def build(self, markdown: str) -> str:
        parts: list[str] = []
        list_tag: Optional[str] = None
        items: list[str] = []

        for block in parse_markdown_blocks(markdown, self.span_limit):
            tag = self.LIST_TAGS.get(type(block))
            if items and tag != list_tag:
                parts.append(self._render_list(list_tag, items))
                items = []
            list_tag = tag
            if tag:
                items.append(spans_to_storage(block.spans))
            else:
                parts.append(self.render_block(block))

        if items:
            parts.append(self._render_list(list_tag, items))
        return "\n".join(parts)

    def render_block(self, block: Block) -> str:
        if isinstance(block, Heading):
            return f"<h{block.level}>{spans_to_storage(block.spans)}</h{block.level}>"

        elif isinstance(block, Paragraph):
            return f"<p>{spans_to_storage(block.spans)}</p>"

        elif isinstance(block, (BulletItem, NumberedItem)):
            return self._render_list(self.LIST_TAGS[type(block)], [spans_to_storage(block.spans)])

        elif isinstance(block, Quote):
            return f"<blockquote><p>{spans_to_storage(block.spans)}</p></blockquote>"

        elif isinstance(block, Divider):
            return "<hr />"

        elif isinstance(block, Code):
            language = CONFLUENCE_LANGUAGE_ALIASES.get(block.language, CONFLUENCE_PLAIN_TEXT_LANGUAGE)
            # "]]>" cannot appear inside CDATA; split it across two sections
            body = block.text.replace("]]>", "]]]]><![CDATA[>")
            return (
                '<ac:structured-macro ac:name="code">'
                f'<ac:parameter ac:name="language">{language}</ac:parameter>'
                f'<ac:plain-text-body><![CDATA[{body}]]></ac:plain-text-body>'
                '</ac:structured-macro>'
            )

        elif isinstance(block, Table):
            rows = []
            for row_index, row in enumerate(block.rows):
                cell_tag = "th" if row_index == 0 else "td"
                cells = "".join(f"<{cell_tag}>{spans_to_storage(cell)}</{cell_tag}>" for cell in row)
                rows.append(f"<tr>{cells}</tr>")
            return f"<table><tbody>{''.join(rows)}</tbody></table>"

        raise TypeError(f"Unsupported block: {type(block).__name__}")

    @staticmethod
    def _render_list(tag: str, items: list[str]) -> str:
        body = "\n".join(f"<li>{item}</li>" for item in items)
        return f"<{tag}>\n{body}\n</{tag}>"


# =============================================================================
# Notion IDs
# =============================================================================

UUID_PATTERN = re.compile(
    r'^[0-9a-f]{8}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{12}$',
    re.IGNORECASE
)
NOTION_URL_PATTERN = re.compile(
    r'https?://(?:www\.)?notion\.(?:so|site)/(?:[^/]+/)?([^?#]+)',
    re.IGNORECASE
)


def normalize_uuid(uuid_str: str) -> str:
    """Normalize a UUID to standard format with dashes.

    Raises:
        ValueError: If input is not a valid UUID (wrong length or invalid chars).
    """
    clean = uuid_str.replace('-', '').lower()
    if len(clean) != 32:
        raise ValueError(f"Invalid UUID length: {uuid_str}")
    if not all(c in '0123456789abcdef' for c in clean):
        raise ValueError(f"Invalid UUID characters: {uuid_str}")
    return f"{clean[:8]}-{clean[8:12]}-{clean[12:16]}-{clean[16:20]}-{clean[20:]}"


def extract_uuid_from_url(url: str) -> Optional[str]:
    """Extract a Notion UUID from a page URL.

    Handles formats like:
    - https://notion.so/workspace/Page-Title-abc123def456...
    - https://www.notion.so/abc123def456...
    """
    match = NOTION_URL_PATTERN.match(url)
    if not match:
        return None
    uuid_match = re.search(r'([0-9a-f]{32}|[0-9a-f-]{36})$', match.group(1), re.IGNORECASE)
    if uuid_match:
        return normalize_uuid(uuid_match.group(1))
    return None


def resolve_notion_id(ref: str) -> str:
    """Resolve a UUID (with or without dashes) or Notion URL to a UUID.

    Raises:
        ValidationError: If the reference is neither.
    """
    ref = (ref or "").strip()
    if UUID_PATTERN.match(ref):
        return normalize_uuid(ref)
    if ref.startswith('http'):
        extracted = extract_uuid_from_url(ref)
        if extracted:
            return extracted
    raise ValidationError(f"Not a Notion page ID or URL: {ref!r}", hint=HINTS["unknown_id"])


# =============================================================================
# Chunked Delivery (Notion block append)
# =============================================================================

NOTION_API_BASE = "https://api.notion.com/v1"
NOTION_VERSION = "2022-06-28"
NOTION_MAX_BLOCKS_PER_REQUEST = 100

# Block types whose children must be sent with the parent at creation time
INLINE_CHILD_BLOCK_TYPES = {'table'}


def notion_headers(token: str) -> dict:
    return {
        "Authorization": f"Bearer {token}",
        "Notion-Version": NOTION_VERSION,
        "Content-Type": "application/json",
    }


@dataclass
class DeliveryConfig:
    """Platform limits and pacing for chunked delivery."""
    max_blocks_per_request: int = NOTION_MAX_BLOCKS_PER_REQUEST
    pace_delay: float = 0.35  # seconds between append calls (~3 req/s)
    retry_policy: RetryPolicy = field(default_factory=lambda: RetryPolicy(timeout=10.0))


@dataclass
class DeliveryChunk:
    """One append call's worth of top-level blocks.

    pending_children maps a block's index within this chunk to the children
    that can only be sent once the server has assigned that block an ID.
    """
    index: int
    blocks: list[dict] = field(default_factory=list)
    pending_children: dict[int, list[dict]] = field(default_factory=dict)


@dataclass
class DeliveryResult:
    blocks_added: int = 0  # top-level blocks under the target
    chunk_count: int = 0  # top-level append calls
    nested_blocks_added: int = 0  # blocks delivered in follow-up calls
    block_ids: list[str] = field(default_factory=list)


def _strip_children(block: dict, cap: int) -> tuple[dict, list[dict]]:
    """Return a copy of block without nested children, plus those children.

    Tables keep up to cap rows inline (Notion requires at least one row at
    creation); the overflow rows are returned for a follow-up append.
    """
    block_type = block.get("type")
    payload = block.get(block_type) if block_type else None
    if not isinstance(payload, dict) or "children" not in payload:
        return block, []

    children = list(payload["children"])
    normalized_payload = dict(payload)
    if block_type in INLINE_CHILD_BLOCK_TYPES:
        normalized_payload["children"] = children[:cap]
        pending = children[cap:]
    else:
        del normalized_payload["children"]
        pending = children

    normalized = dict(block)
    normalized[block_type] = normalized_payload
    return normalized, pending


def build_delivery_chunk(index: int, blocks: list[dict], cap: int) -> DeliveryChunk:
    """Normalize a batch of at most cap blocks into a DeliveryChunk."""
    chunk = DeliveryChunk(index=index)
    for local_index, block in enumerate(blocks):
        normalized, pending = _strip_children(block, cap)
        chunk.blocks.append(normalized)
        if pending:
            chunk.pending_children[local_index] = pending
    return chunk


class ChunkedDeliveryClient:
    """Append a block tree under a Notion page or block.

    Batches are sent strictly in sequence: each nested child batch needs the
    ID its parent received in an earlier response, and pacing applies
    between consecutive calls.
    """

    def __init__(
        self,
        http: RetryingHttpClient,
        token: str,
        config: DeliveryConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        api_base: str = NOTION_API_BASE,
    ):
        self._http = http
        self._token = token
        self.config = config or DeliveryConfig()
        self._sleep = sleep
        self._api_base = api_base
        self._calls_sent = 0

    async def deliver(self, target_id: str, blocks: list[dict]) -> DeliveryResult:
        """Append blocks under target_id, then their nested children.

        Returns:
            DeliveryResult with top-level block and chunk counts.

        Raises:
            DeliveryError: With the underlying code/status of the failure.
        """
        result = DeliveryResult()
        if not blocks:
            return result

        cap = self.config.max_blocks_per_request
        chunk_count = math.ceil(len(blocks) / cap)

        for chunk_index, start in enumerate(range(0, len(blocks), cap)):
            chunk = build_delivery_chunk(chunk_index, blocks[start:start + cap], cap)
            logger.info(
                f"Sending chunk {chunk_index + 1}/{chunk_count} "
                f"({len(chunk.blocks)} blocks) to {target_id}"
            )
            created = await self._append(target_id, chunk, chunk_count)
            result.blocks_added += len(chunk.blocks)
            result.chunk_count += 1
            result.block_ids.extend(item.get("id", "") for item in created[:len(chunk.blocks)])

            for local_index in sorted(chunk.pending_children):
                if local_index >= len(created) or not created[local_index].get("id"):
                    raise DeliveryError(
                        f"Notion response is missing the ID of block {start + local_index}; "
                        f"its nested children cannot be delivered",
                        code=UpstreamUnavailableError.code,
                        status=502,
                        chunk_index=chunk_index,
                        target_id=target_id,
                    )
                children = chunk.pending_children.pop(local_index)
                nested = await self.deliver(created[local_index]["id"], children)
                result.nested_blocks_added += nested.blocks_added + nested.nested_blocks_added

        return result

    async def _append(self, target_id: str, chunk: DeliveryChunk, chunk_count: int) -> list[dict]:
        if self._calls_sent:
            await self._sleep(self.config.pace_delay)
        self._calls_sent += 1

        request = self._http.build_request(
            "PATCH",
            f"{self._api_base}/blocks/{target_id}/children",
            headers=notion_headers(self._token),
            json={"children": chunk.blocks},
        )
        try:
            response = await self._http.send(request, self.config.retry_policy)
        except DocBridgeError as e:
            raise DeliveryError.from_error(e, chunk.index, chunk_count, target_id) from e

        if response.is_error:
            error = classify_response_error(response, "Notion")
            logger.error(f"Append to {target_id} failed: {error.message}")
            raise DeliveryError.from_error(error, chunk.index, chunk_count, target_id)

        data = _safe_json(response) or {}
        return data.get("results", [])


# =============================================================================
# Notion Pages and Search
# =============================================================================


async def _notion_request_async(
    method: str,
    endpoint: str,
    json_body: Optional[dict] = None,
    params: Optional[dict] = None,
    policy: Optional[RetryPolicy] = None,
) -> dict:
    """Make an authenticated Notion API call with retry.

    Raises:
        DocBridgeError: Classified failure.
    """
    http = await _get_retrying_client()
    request = http.build_request(
        method,
        f"{NOTION_API_BASE}{endpoint}",
        headers=notion_headers(_get_notion_token()),
        json=json_body,
        params=params,
    )
    response = await http.send(request, policy)
    if response.is_error:
        raise classify_response_error(response, "Notion")
    return response.json()


def get_page_title(page: dict) -> str:
    """Extract title from page properties."""
    props = page.get("properties", {})

    # Try common title property names
    for key in ["title", "Title", "Name", "name"]:
        if key in props:
            title_prop = props[key]
            if title_prop.get("type") == "title":
                title_array = title_prop.get("title", [])
                return "".join(t.get("plain_text", "") for t in title_array) or "Untitled"

    # Fallback: find any title-type property
    for prop in props.values():
        if prop.get("type") == "title":
            title_array = prop.get("title", [])
            return "".join(t.get("plain_text", "") for t in title_array) or "Untitled"

    return "Untitled"


async def create_notion_page_async(parent_page_id: str, title: str) -> dict:
    """Create an empty page under parent_page_id; content is appended after."""
    if not title:
        raise ValidationError("Page title is required")
    body = {
        "parent": {"page_id": parent_page_id},
        "properties": {
            "title": {"title": [{"type": "text", "text": {"content": title}}]}
        },
    }
    return await _notion_request_async("POST", "/pages", json_body=body,
                                       policy=RetryPolicy(timeout=10.0))


async def check_notion_access_async(page_id: str) -> tuple[bool, Optional[str]]:
    """Pre-flight check that the integration can see a page or block.

    Returns:
        Tuple of (accessible, error message).
    """
    try:
        await _notion_request_async("GET", f"/blocks/{page_id}",
                                    policy=RetryPolicy(timeout=5.0, attempts=1))
    except PermissionDeniedError as e:
        if e.status == 404:
            return False, "Page not found. Verify the page ID is correct and shared with the integration."
        return False, ("Permission denied. Ensure the page is shared with your integration "
                       "and it has Insert content capability.")
    except DocBridgeError as e:
        return False, f"Access check failed: {e.message}"
    return True, None


PageFetcher = Callable[[Optional[str]], Awaitable[tuple[list[dict], Optional[str]]]]


async def paginate_async(fetch_page: PageFetcher, limit: Optional[int] = None) -> list[dict]:
    """Collect items from a cursor-paginated source.

    Args:
        fetch_page: Called with the current cursor (None first); returns the
            page's items and the next cursor, or None when exhausted.
        limit: Stop once this many items are collected.

    Returns:
        Items in source order, at most limit of them.
    """
    items: list[dict] = []
    cursor: Optional[str] = None
    while True:
        page_items, cursor = await fetch_page(cursor)
        items.extend(page_items)
        if limit is not None and len(items) >= limit:
            return items[:limit]
        if not cursor:
            return items


async def search_notion_pages_async(query: str = "", limit: int = 20) -> list[dict]:
    """Search pages shared with the integration by title."""

    async def fetch(cursor: Optional[str]) -> tuple[list[dict], Optional[str]]:
        body: dict = {
            "query": query,
            "filter": {"property": "object", "value": "page"},
            "sort": {"direction": "descending", "timestamp": "last_edited_time"},
            "page_size": min(limit, 100),
        }
        if cursor:
            body["start_cursor"] = cursor
        data = await _notion_request_async("POST", "/search", json_body=body)
        pages = [
            {"id": item.get("id", ""), "title": get_page_title(item), "url": item.get("url", "")}
            for item in data.get("results", [])
        ]
        return pages, data.get("next_cursor") if data.get("has_more") else None

    return await paginate_async(fetch, limit=limit)


# =============================================================================
# Confluence Pages and Search
# =============================================================================

CONFLUENCE_API_PATH = "/wiki/api/v2"
CONFLUENCE_REST_PATH = "/wiki/rest/api"
CONFLUENCE_WRITE_MODES = ("append", "overwrite")


def confluence_headers(credentials: ConfluenceCredentials) -> dict:
    auth = b64encode(f"{credentials.email}:{credentials.token}".encode()).decode()
    return {
        "Authorization": f"Basic {auth}",
        "Content-Type": "application/json",
        "Accept": "application/json",
    }


async def _confluence_request_async(
    method: str,
    path: str,
    json_body: Optional[dict] = None,
    params: Optional[dict] = None,
) -> dict:
    """Make an authenticated Confluence Cloud call with retry.

    Args:
        path: Path below the site root, e.g. "/wiki/api/v2/pages/123".
    """
    credentials = _get_confluence_credentials()
    http = await _get_retrying_client()
    request = http.build_request(
        method,
        f"https://{credentials.domain}{path}",
        headers=confluence_headers(credentials),
        json=json_body,
        params=params,
    )
    response = await http.send(request)
    if response.is_error:
        raise classify_response_error(response, "Confluence")
    return response.json()


async def fetch_confluence_page_async(page_id: str) -> dict:
    """Read a page with its storage-format body and version."""
    return await _confluence_request_async(
        "GET", f"{CONFLUENCE_API_PATH}/pages/{page_id}", params={"body-format": "storage"}
    )


async def write_confluence_page_async(page_id: str, storage: str, write_mode: str = "append") -> dict:
    """Append to or overwrite a page body using optimistic concurrency.

    The update carries version = current + 1. A 409 means someone else
    updated the page in between; it is raised as VersionConflictError and
    never retried, since resubmitting blindly would discard their edit.

    Returns:
        Dict with page_id, version and write_mode.
    """
    if write_mode not in CONFLUENCE_WRITE_MODES:
        raise ValidationError(f"write_mode must be one of {CONFLUENCE_WRITE_MODES}, got {write_mode!r}")

    page = await fetch_confluence_page_async(page_id)
    current_version = page.get("version", {}).get("number")
    if not isinstance(current_version, int):
        raise UpstreamUnavailableError(f"Confluence page {page_id} has no version number")

    current_body = page.get("body", {}).get("storage", {}).get("value", "")
    if write_mode == "append" and current_body:
        new_body = current_body + "\n" + storage
    else:
        new_body = storage

    new_version = current_version + 1
    await _confluence_request_async(
        "PUT",
        f"{CONFLUENCE_API_PATH}/pages/{page_id}",
        json_body={
            "id": page_id,
            "status": "current",
            "title": page.get("title", ""),
            "body": {"representation": "storage", "value": new_body},
            "version": {"number": new_version},
        },
    )
    logger.info(f"Confluence page {page_id} updated to version {new_version} ({write_mode})")
    return {"page_id": page_id, "version": new_version, "write_mode": write_mode}


def _cql_quote(value: str) -> str:
    return '"' + value.replace('\\', '\\\\').replace('"', '\\"') + '"'


def _extract_cursor(next_link: Optional[str]) -> Optional[str]:
    """Pull the cursor parameter out of a _links.next URL."""
    if not next_link:
        return None
    values = parse_qs(urlparse(next_link).query).get("cursor")
    return values[0] if values else None


async def search_confluence_pages_async(
    query: str = "",
    space_key: str = "",
    limit: int = 50
) -> list[dict]:
    """Search Confluence pages by title, optionally within one space."""
    clauses = ["type=page"]
    if query:
        clauses.append(f"title~{_cql_quote(query)}")
    if space_key:
        clauses.append(f"space={_cql_quote(space_key)}")
    cql = " AND ".join(clauses) + " ORDER BY lastmodified DESC"

    async def fetch(cursor: Optional[str]) -> tuple[list[dict], Optional[str]]:
        params = {"cql": cql, "limit": min(limit, 250), "expand": "space"}
        if cursor:
            params["cursor"] = cursor
        data = await _confluence_request_async(
            "GET", f"{CONFLUENCE_REST_PATH}/content/search", params=params
        )
        pages = [
            {
                "id": item.get("id", ""),
                "title": item.get("title") or "Untitled",
                "space_key": (item.get("space") or {}).get("key", ""),
            }
            for item in data.get("results", [])
        ]
        return pages, _extract_cursor((data.get("_links") or {}).get("next"))

    return await paginate_async(fetch, limit=limit)


# =============================================================================
# Input Optimizer
# =============================================================================

MAX_CHARS_SAFE = 20000
MAX_CHARS_CAUTION = 25000
MAX_CHARS_CRITICAL = 30000

TARGET_SIZE_WARNING = 25000
TARGET_SIZE_CRITICAL = 20000

CODE_BLOCK_PATTERN = re.compile(r'```(\w+)?\n(.*?)```', re.DOTALL)
CODE_BLOCK_PLACEHOLDER = '[CODE_BLOCK_PLACEHOLDER]'
CODE_ELISION_MARKER = '// ... (lines omitted for brevity) ...'
MAX_CODE_BLOCKS_KEPT = 3
KEY_INFO_SHARE = 0.15  # of the target size

KEY_INFO_PATTERNS = [
    re.compile(r'[A-Z]+-\d+'),
    re.compile(r'TICKET-\d+', re.IGNORECASE),
    re.compile(r'JIRA-\d+', re.IGNORECASE),
    re.compile(r'\d{4}-\d{2}-\d{2}'),
    re.compile(r'\d+(?:\.\d+)?\s*(?:ms|seconds|minutes|hours|MB|GB|TB|%)', re.IGNORECASE),
    re.compile(r'(?:error|warning|critical|important|note|todo):\s*[^\n]+', re.IGNORECASE),
    re.compile(r'^#+\s+.+$', re.MULTILINE),
]

IMPORTANT_CODE_PATTERNS = [
    re.compile(r'^import\s'),
    re.compile(r'^from\s'),
    re.compile(r'^def\s'),
    re.compile(r'^class\s'),
    re.compile(r'^function\s'),
    re.compile(r'^const\s.*=.*=>'),
    re.compile(r'^export\s'),
    re.compile(r'SELECT|INSERT|UPDATE|DELETE|CREATE|ALTER', re.IGNORECASE),
    re.compile(r'WHERE|JOIN|GROUP BY|ORDER BY', re.IGNORECASE),
]

SECTION_HEADING = re.compile(r'^#+\s')
SECTION_LABEL = re.compile(r'[A-Z\s]{3,}:?\s*\Z')


@dataclass
class InputAnalysis:
    char_count: int
    token_estimate: int
    level: str  # safe | caution | warning | critical
    needs_optimization: bool


@dataclass
class OptimizationResult:
    optimized_context: str
    was_optimized: bool
    original_size: int
    optimized_size: int
    reduction_percent: int


def estimate_token_count(text: str) -> int:
    return math.ceil(len(text) * 1.25)


def analyze_input(text: str) -> InputAnalysis:
    """Classify input size against the optimization thresholds."""
    char_count = len(text)
    level = "safe"
    needs_optimization = False

    if char_count > MAX_CHARS_CRITICAL:
        level = "critical"
        needs_optimization = True
    elif char_count > MAX_CHARS_CAUTION:
        level = "warning"
        needs_optimization = True
    elif char_count > MAX_CHARS_SAFE:
        level = "caution"

    return InputAnalysis(
        char_count=char_count,
        token_estimate=estimate_token_count(text),
        level=level,
        needs_optimization=needs_optimization,
    )


def _extract_code_blocks(text: str) -> tuple[list[tuple[str, str]], str]:
    """Pull fenced code out of text.

    Returns:
        Tuple of ([(language, code)], text with placeholders).
    """
    blocks = [
        (match.group(1) or 'text', match.group(2).strip())
        for match in CODE_BLOCK_PATTERN.finditer(text)
    ]
    return blocks, CODE_BLOCK_PATTERN.sub(CODE_BLOCK_PLACEHOLDER, text)


def _extract_key_information(text: str, max_chars: int) -> str:
    """Collect ticket IDs, dates, metrics, flagged lines and headings.

    Whole items are kept in first-seen order until max_chars is reached.
    """
    found: list[str] = []
    for pattern in KEY_INFO_PATTERNS:
        found.extend(match.group(0) for match in pattern.finditer(text))

    kept: list[str] = []
    size = 0
    # dict.fromkeys de-duplicates while keeping first-seen order
    for item in dict.fromkeys(found):
        size += len(item) + 1
        if size > max_chars:
            break
        kept.append(item)
    return "\n".join(kept)


def _is_section_header(line: str) -> bool:
    return bool(SECTION_HEADING.match(line) or SECTION_LABEL.match(line))


def _summarize_prose(text: str, max_chars: int) -> str:
    """Summarize prose section by section with equal character budgets.

    Sections start at heading-like paragraphs. Oversized sections keep their
    header line and a truncated remainder.
    """
    sections: list[str] = []
    current: list[str] = []
    for paragraph in re.split(r'\n\n+', text):
        if _is_section_header(paragraph) and current:
            sections.append("\n\n".join(current))
            current = []
        current.append(paragraph)
    if current:
        sections.append("\n\n".join(current))

    budget = max_chars // max(len(sections), 1)
    summarized = []
    for section in sections:
        if len(section) <= budget:
            summarized.append(section)
            continue

        lines = section.split("\n")
        header = next((line for line in lines if _is_section_header(line)), None)
        if header is not None:
            remaining = "\n".join(line for line in lines if line != header)
            keep = max(budget - len(header) - 50, 0)
            summarized.append(header)
            summarized.append(remaining[:keep] + "\n...(truncated)")
        else:
            summarized.append(section[:budget] + "\n...(truncated)")

    result = "\n\n".join(summarized)
    if len(result) > max_chars:
        result = result[:max_chars] + "\n...(truncated)"
    return result


def _summarize_code(code: str, max_lines: int = 20) -> str:
    """Keep the highest-scoring lines of a code block in original order."""
    lines = code.split("\n")
    if len(lines) <= max_lines:
        return code

    scored = []
    for index, line in enumerate(lines):
        score = sum(10 for pattern in IMPORTANT_CODE_PATTERNS if pattern.search(line))
        if index < 5 or index >= len(lines) - 5:
            score += 5
        if 10 < len(line.strip()) < 100:
            score += 2
        scored.append((score, index, line))

    # sorted() is stable, so equal scores keep document order
    kept = sorted(sorted(scored, key=lambda item: -item[0])[:max_lines], key=lambda item: item[1])

    result = []
    last_index = -1
    for _, index, line in kept:
        if last_index != -1 and index > last_index + 1:
            result.append(CODE_ELISION_MARKER)
        result.append(line)
        last_index = index
    return "\n".join(result)


def optimize_input(text: str, mode: str = "task") -> OptimizationResult:
    """Shrink oversized input while keeping structure and salient facts.

    Input that does not need optimization is returned unchanged.
    """
    analysis = analyze_input(text)
    if not analysis.needs_optimization:
        return OptimizationResult(
            optimized_context=text,
            was_optimized=False,
            original_size=analysis.char_count,
            optimized_size=analysis.char_count,
            reduction_percent=0,
        )

    logger.info(
        f"Input size: {analysis.char_count} chars (~{analysis.token_estimate} tokens). "
        f"Level: {analysis.level}. Optimizing {mode} input"
    )
    target_size = TARGET_SIZE_CRITICAL if analysis.level == "critical" else TARGET_SIZE_WARNING

    code_blocks, prose = _extract_code_blocks(text)
    key_info = _extract_key_information(prose, int(target_size * KEY_INFO_SHARE))
    summary = _summarize_prose(prose, int(target_size * 0.8) - len(key_info))
    max_code_lines = math.ceil(50 * (target_size / 25000))
    summarized_code = [(language, _summarize_code(code, max_code_lines)) for language, code in code_blocks]

    parts = [
        f"[AUTO-OPTIMIZED INPUT - Original: {analysis.char_count} chars]\n\n",
        f"KEY INFORMATION EXTRACTED:\n{key_info}\n\n",
        f"CONTEXT:\n{summary}\n\n",
    ]
    if summarized_code:
        parts.append("CODE ARTIFACTS:\n")
        for language, code in summarized_code[:MAX_CODE_BLOCKS_KEPT]:
            parts.append(f"```{language}\n{code}\n```\n\n")
        if len(summarized_code) > MAX_CODE_BLOCKS_KEPT:
            parts.append(f"({len(summarized_code) - MAX_CODE_BLOCKS_KEPT} additional code blocks omitted)\n")

    optimized = "".join(parts)
    reduction = round((analysis.char_count - len(optimized)) / analysis.char_count * 100)
    logger.info(f"Optimization complete: {len(optimized)} chars ({reduction}% reduction)")

    return OptimizationResult(
        optimized_context=optimized,
        was_optimized=True,
        original_size=analysis.char_count,
        optimized_size=len(optimized),
        reduction_percent=reduction,
    )


# =============================================================================
# Generation Backends
# =============================================================================

DOC_MODES = ("task", "architecture", "meeting")

GROQ_API_URL = "https://api.groq.com/openai/v1/chat/completions"
GROQ_MODEL = "llama-3.3-70b-versatile"
GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"
GEMINI_MODEL = "gemini-2.0-flash"

GENERATION_POLICY = RetryPolicy(timeout=60.0, attempts=3, base_delay=1.0, max_delay=8.0)

MODE_INSTRUCTIONS = {
    "task": "Write task documentation in markdown from the context below.",
    "architecture": "Write architecture documentation in markdown from the context below.",
    "meeting": "Write a meeting record in markdown from the transcript below.",
}


async def _call_backend(
    http: RetryingHttpClient,
    provider: str,
    request: httpx.Request,
    policy: RetryPolicy,
) -> dict:
    """Send a backend request, converting every failure to ProviderError."""
    try:
        response = await http.send(request, policy)
    except RateLimitError as e:
        raise ProviderError(provider, e.message, retry_after=e.retry_after, status=429, cause=e) from e
    except DocBridgeError as e:
        raise ProviderError(provider, e.message, status=e.status, cause=e) from e

    if response.is_error:
        error = classify_response_error(response, provider.capitalize())
        raise ProviderError(provider, error.message, status=error.status, cause=error)

    data = _safe_json(response)
    if not isinstance(data, dict):
        raise ProviderError(provider, f"{provider} returned a non-JSON response")
    return data


class GroqBackend:
    """Groq chat completions (OpenAI-compatible API)."""

    name = "groq"

    def __init__(self, api_key: Optional[str], http: RetryingHttpClient,
                 model: str = GROQ_MODEL, policy: RetryPolicy = GENERATION_POLICY):
        self.api_key = api_key
        self.model = model
        self._http = http
        self._policy = policy

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def generate(self, context: str, mode: str = "task") -> str:
        request = self._http.build_request(
            "POST",
            GROQ_API_URL,
            headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
            json={
                "model": self.model,
                "messages": [
                    {"role": "system", "content": MODE_INSTRUCTIONS[mode]},
                    {"role": "user", "content": context},
                ],
                "temperature": 0.3,
            },
        )
        data = await _call_backend(self._http, self.name, request, self._policy)
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            content = None
        if not content:
            raise ProviderError(self.name, "groq returned no content")
        return content


class GeminiBackend:
    """Google Gemini generateContent API."""

    name = "gemini"

    def __init__(self, api_key: Optional[str], http: RetryingHttpClient,
                 model: str = GEMINI_MODEL, policy: RetryPolicy = GENERATION_POLICY):
        self.api_key = api_key
        self.model = model
        self._http = http
        self._policy = policy

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def generate(self, context: str, mode: str = "task") -> str:
        request = self._http.build_request(
            "POST",
            f"{GEMINI_API_BASE}/models/{self.model}:generateContent",
            headers={"x-goog-api-key": self.api_key or "", "Content-Type": "application/json"},
            json={
                "systemInstruction": {"parts": [{"text": MODE_INSTRUCTIONS[mode]}]},
                "contents": [{"role": "user", "parts": [{"text": context}]}],
            },
        )
        data = await _call_backend(self._http, self.name, request, self._policy)
        try:
            parts = data["candidates"][0]["content"]["parts"]
            content = "".join(part.get("text", "") for part in parts)
        except (KeyError, IndexError, TypeError):
            content = ""
        if not content:
            raise ProviderError(self.name, "gemini returned no content")
        return content


# =============================================================================
# Provider Router
# =============================================================================


@dataclass
class ProviderSelection:
    provider: str
    reason: str


@dataclass
class GenerationResult:
    documentation: str
    provider: str
    was_optimized: bool
    metadata: dict = field(default_factory=dict)


class ProviderRouter:
    """Route generation to the first configured backend, failing over once.

    Backends are given in preference order; the first configured one is the
    primary. Each configured backend is tried at most once per request.
    """

    def __init__(self, backends: list):
        self.backends = backends

    def configured_backends(self) -> list:
        return [backend for backend in self.backends if backend.is_configured()]

    def select_provider(self, context: str) -> ProviderSelection:
        configured = self.configured_backends()
        if not configured:
            raise ProviderUnavailableError(
                "No generation providers configured. Pass --groq-key-file or --gemini-key-file.",
                hint=HINTS["no_provider"],
            )
        primary = configured[0]
        if len(configured) == 1:
            return ProviderSelection(primary.name, f"Only {primary.name} configured")
        return ProviderSelection(
            primary.name,
            f"{primary.name} selected as primary provider (input: {len(context)} chars)",
        )

    async def generate(self, context: str, mode: str = "task") -> GenerationResult:
        """Optimize the input, then generate with failover.

        Raises:
            ProviderUnavailableError: Nothing configured, or every backend failed.
            Exception: The sole configured backend's own error.
        """
        if mode not in DOC_MODES:
            raise ValidationError(f"mode must be one of {DOC_MODES}, got {mode!r}")

        logger.info(f"Request received for {mode} documentation ({len(context)} chars)")
        optimization = optimize_input(context, mode)
        processed = optimization.optimized_context

        selection = self.select_provider(processed)
        logger.info(f"Selected provider: {selection.provider} ({selection.reason})")

        metadata = {
            "original_size": optimization.original_size,
            "processed_size": len(processed),
            "reduction_percent": optimization.reduction_percent,
            "selection_reason": selection.reason,
        }

        failures: list[tuple[str, Exception]] = []
        for backend in self.configured_backends():
            if failures:
                logger.info(f"Attempting fallback to {backend.name}...")
            try:
                documentation = await backend.generate(processed, mode)
            except Exception as e:
                logger.error(f"{backend.name} failed: {e}")
                failures.append((backend.name, e))
                continue

            if failures:
                primary_name, primary_error = failures[0]
                metadata["selection_reason"] = (
                    f"Fallback to {backend.name} after {primary_name} failure: {primary_error}"
                )
                metadata["primary_error"] = str(primary_error)
            return GenerationResult(
                documentation=documentation,
                provider=backend.name,
                was_optimized=optimization.was_optimized,
                metadata=metadata,
            )

        if len(failures) == 1:
            raise failures[0][1]

        details = ". ".join(
            f"{'Primary' if i == 0 else 'Fallback'} ({name}): {error}"
            for i, (name, error) in enumerate(failures)
        )
        raise ProviderUnavailableError(
            f"All generation providers failed. {details}",
            hint=HINTS["no_provider"],
        )


async def _build_router() -> ProviderRouter:
    http = await _get_retrying_client()
    return ProviderRouter([
        GroqBackend(_groq_api_key, http),
        GeminiBackend(_gemini_api_key, http),
    ])


# =============================================================================
# Self-Healing Error Messages
# =============================================================================


def _error(code: str, message: str, hint: str | None = None, ref: str | None = None) -> str:
    """Format error with optional self-healing hint.

    Args:
        code: Error code (e.g., PERMISSION, RATE_LIMIT)
        message: Human-readable description
        hint: Suggestion on how to fix the issue
        ref: The reference that failed (for context)

    Returns:
        Formatted error string with hint if provided.
    """
    parts = [f"error: {code} - {message}"]
    if ref:
        parts.append(f"ref: {ref}")
    if hint:
        parts.append(f"hint: {hint}")
    return "\n".join(parts)


def _error_from_exception(e: DocBridgeError, ref: str | None = None) -> str:
    hint = e.hint
    retry_after = getattr(e, "retry_after", None)
    if retry_after is not None:
        wait = f"Retry after ~{math.ceil(retry_after)}s."
        hint = f"{hint} {wait}" if hint else wait
    return _error(e.code.upper(), e.message, hint=hint, ref=ref)


# Common error hints
HINTS = {
    "unknown_id": "Use notion_search to find the page by title, or provide a full Notion UUID/URL.",
    "ref_gone": "The page may be deleted or not shared with this integration. Search for it by title.",
    "missing_capability": "Share the page with the integration: open it in Notion → Share → invite "
                          "the integration, and make sure it has Insert content capability.",
    "rate_limited": "Too many requests. Wait a moment and try again.",
    "version_conflict": "The page changed while writing. Re-run the export to apply it to the latest version.",
    "no_provider": "Pass --groq-key-file and/or --gemini-key-file with valid API keys.",
    "missing_target": "Pass page_id to append to an existing page, or title (and parent_page_id) to create one.",
}


# =============================================================================
# MCP Server
# =============================================================================

mcp = FastMCP("docbridge", host="127.0.0.1", port=2052)


@mcp.tool()
async def docs_generate(context: str, mode: str = "task") -> str:
    """Generate markdown documentation from a raw context dump.

    Oversized input (> 25,000 chars) is condensed first. Groq is the primary
    provider when both are configured; Gemini is tried if it fails.

    Args:
        context: Notes, code, transcripts or other raw material.
        mode: "task" (default), "architecture" or "meeting".

    Returns:
        A short metadata header, "---", then the generated markdown.
    """
    try:
        router = await _build_router()
        result = await router.generate(context, mode)
    except DocBridgeError as e:
        return _error_from_exception(e)
    except Exception as e:
        return _error("UNEXPECTED", f"{type(e).__name__}: {e}")

    meta = result.metadata
    lines = [
        f"provider: {result.provider} ({meta['selection_reason']})",
        f"optimized: {'yes' if result.was_optimized else 'no'} "
        f"({meta['original_size']} → {meta['processed_size']} chars)",
        "---",
        result.documentation,
    ]
    return "\n".join(lines)


@mcp.tool()
def docs_analyze(context: str) -> str:
    """Report input size and whether docs_generate will condense it.

    Returns:
        chars, estimated tokens, level (safe/caution/warning/critical).
    """
    analysis = analyze_input(context)
    return (
        f"chars: {analysis.char_count}\n"
        f"tokens: ~{analysis.token_estimate}\n"
        f"level: {analysis.level}\n"
        f"optimize: {'yes' if analysis.needs_optimization else 'no'}"
    )


@mcp.tool()
async def notion_export(
    content: str,
    page_id: str = "",
    title: str = "",
    parent_page_id: str = "",
    mode: str = "task"
) -> str:
    """Convert markdown to Notion blocks and append them to a page.

    Args:
        content: Markdown to export.
        page_id: Existing page (UUID or URL) to append to.
        title: Title of a new page to create when page_id is empty.
        parent_page_id: Parent page (UUID or URL) for the new page.
        mode: "task", "architecture" (adds a closing divider) or "meeting".

    Supported markdown:
        # / ## / ### headings, paragraphs, - or * bullets, 1. numbered items,
        > quotes, --- dividers, ```lang fenced code, | pipe | tables |
        Inline: **bold** __bold__ *italic* _italic_ `code` [text](url)

    Returns:
        "ok: ..." summary or an error with a hint.
    """
    if not page_id and not title:
        return _error("MISSING_TARGET", "Either page_id or title is required", hint=HINTS["missing_target"])

    try:
        token = _get_notion_token()
        if mode == "architecture":
            content = f"{content}\n\n---\n"
        blocks = NotionBlockBuilder().build(content)
        logger.info(f"Generated {len(blocks)} Notion blocks (mode: {mode})")

        if page_id:
            target_id = resolve_notion_id(page_id)
        else:
            if not parent_page_id:
                return _error("MISSING_TARGET", "parent_page_id is required to create a page",
                              hint=HINTS["missing_target"])
            page = await create_notion_page_async(resolve_notion_id(parent_page_id), title)
            target_id = page["id"]

        client = ChunkedDeliveryClient(await _get_retrying_client(), token)
        result = await client.deliver(target_id, blocks)
    except RuntimeError as e:
        return _error("NOT_CONFIGURED", str(e))
    except DocBridgeError as e:
        return _error_from_exception(e, ref=page_id or parent_page_id or None)

    summary = f"ok: appended {result.blocks_added} blocks in {result.chunk_count} chunk(s) to {target_id}"
    if result.nested_blocks_added:
        summary += f" (+{result.nested_blocks_added} nested)"
    return summary


@mcp.tool()
async def notion_check_access(page_id: str) -> str:
    """Check that the integration can see and write to a Notion page."""
    try:
        _get_notion_token()
        accessible, message = await check_notion_access_async(resolve_notion_id(page_id))
    except RuntimeError as e:
        return _error("NOT_CONFIGURED", str(e))
    except DocBridgeError as e:
        return _error_from_exception(e, ref=page_id)

    if accessible:
        return "ok: accessible"
    return _error("NO_ACCESS", message, hint=HINTS["missing_capability"], ref=page_id)


@mcp.tool()
async def notion_search(query: str = "", limit: int = 20) -> str:
    """Search Notion pages shared with the integration by title.

    Returns:
        One "id  title" line per page.
    """
    try:
        pages = await search_notion_pages_async(query, max(1, min(limit, 100)))
    except RuntimeError as e:
        return _error("NOT_CONFIGURED", str(e))
    except DocBridgeError as e:
        return _error_from_exception(e)

    if not pages:
        return f"No results for '{query}'"
    lines = [f"Found {len(pages)} page(s) for '{query}':"]
    lines.extend(f"{page['id']}  {page['title']}" for page in pages)
    return "\n".join(lines)


@mcp.tool()
async def confluence_export(content: str, page_id: str, write_mode: str = "append") -> str:
    """Convert markdown to Confluence storage format and write it to a page.

    Args:
        content: Markdown to export.
        page_id: Confluence page ID.
        write_mode: "append" (default) or "overwrite".

    Returns:
        "ok: ..." with the new page version, or an error with a hint.
    """
    try:
        storage = ConfluenceStorageBuilder().build(content)
        result = await write_confluence_page_async(page_id, storage, write_mode)
    except RuntimeError as e:
        return _error("NOT_CONFIGURED", str(e))
    except DocBridgeError as e:
        return _error_from_exception(e, ref=page_id)

    verb = "replaced in" if write_mode == "overwrite" else "appended to"
    return f"ok: content {verb} page {result['page_id']} (version {result['version']})"


@mcp.tool()
async def confluence_search(query: str = "", space_key: str = "", limit: int = 50) -> str:
    """Search Confluence pages by title, optionally within one space.

    Returns:
        One "id  [space]  title" line per page.
    """
    try:
        pages = await search_confluence_pages_async(query, space_key, max(1, min(limit, 200)))
    except RuntimeError as e:
        return _error("NOT_CONFIGURED", str(e))
    except DocBridgeError as e:
        return _error_from_exception(e)

    if not pages:
        return f"No results for '{query}'"
    lines = [f"Found {len(pages)} page(s) for '{query}':"]
    lines.extend(f"{page['id']}  [{page['space_key']}]  {page['title']}" for page in pages)
    return "\n".join(lines)


# =============================================================================
# HTTP Endpoints (/health)
# =============================================================================

async def health_endpoint(request: Request) -> JSONResponse:
    """Health check endpoint for easy testing."""
    return JSONResponse({
        "status": "ok",
        "notion": _notion_token is not None,
        "confluence": _confluence_credentials is not None,
        "providers": {
            "groq": bool(_groq_api_key),
            "gemini": bool(_gemini_api_key),
        },
    })


# =============================================================================
# Main Entry Point
# =============================================================================


def _read_secret(path_arg: Optional[str], label: str) -> Optional[str]:
    """Read a secret from a file, exiting if the file is missing or empty."""
    if not path_arg:
        return None
    path = Path(path_arg).expanduser()
    if not path.exists():
        logger.error(f"{label} file not found: {path}")
        raise SystemExit(1)
    secret = path.read_text().strip()
    if not secret:
        logger.error(f"{label} file is empty: {path}")
        raise SystemExit(1)
    logger.info(f"{label} loaded from {path}")
    return secret


def main():
    """Run the docbridge MCP server.

    Supports two transport modes:
    - stdio (default): For an MCP client to launch directly
    - http: For standalone server on port 2052

    Usage:
        uv run docbridge-mcp --notion-token-file secrets/notion_token
        uv run docbridge-mcp --groq-key-file secrets/groq --http
    """
    import argparse

    parser = argparse.ArgumentParser(description="Docbridge MCP Server")
    parser.add_argument("--notion-token-file", help="Path to file containing Notion API token")
    parser.add_argument("--confluence-domain", help="Confluence Cloud site, e.g. acme.atlassian.net")
    parser.add_argument("--confluence-email", help="Confluence account email")
    parser.add_argument("--confluence-token-file", help="Path to file containing Confluence API token")
    parser.add_argument("--groq-key-file", help="Path to file containing Groq API key")
    parser.add_argument("--gemini-key-file", help="Path to file containing Gemini API key")
    parser.add_argument(
        "--http",
        action="store_true",
        help="Run as HTTP server on localhost:2052 instead of stdio"
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S"
    )

    global _notion_token, _confluence_credentials, _groq_api_key, _gemini_api_key
    _notion_token = _read_secret(args.notion_token_file, "Notion token")
    _groq_api_key = _read_secret(args.groq_key_file, "Groq API key")
    _gemini_api_key = _read_secret(args.gemini_key_file, "Gemini API key")

    confluence_token = _read_secret(args.confluence_token_file, "Confluence token")
    if confluence_token:
        if not (args.confluence_domain and args.confluence_email):
            parser.error("--confluence-token-file requires --confluence-domain and --confluence-email")
        _confluence_credentials = ConfluenceCredentials(
            domain=args.confluence_domain.removeprefix("https://").rstrip("/"),
            email=args.confluence_email,
            token=confluence_token,
        )

    if args.http:
        # HTTP mode: standalone server with health endpoint
        import uvicorn

        app = mcp.streamable_http_app()
        app.add_route("/health", health_endpoint, methods=["GET"])

        logger.info("Starting docbridge MCP server on http://127.0.0.1:2052")
        uvicorn.run(app, host="127.0.0.1", port=2052, log_level="warning")
    else:
        # stdio mode: the MCP client launches this process
        mcp.run()


if __name__ == "__main__":
    main()
