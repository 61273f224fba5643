"""
Best-effort HTML rewriting for proxied documents.

The document is walked once by a small tokenizer that recognises comments,
declarations, start/end tags with their attributes and the raw text content of
``<script>`` and ``<style>``. Only recognised reference-bearing attributes,
inline CSS and inline scripts are touched; every other byte of the input is
copied through as-is. Anything the tokenizer cannot make sense of (an
unterminated tag or quote, a stray ``<``) is emitted unchanged.

All scans are ``str.find`` calls or anchored regular expressions without nested
quantifiers, so the work is linear in the size of the document.
"""

import html
import logging
import re
from enum import Enum
from typing import Iterator, List, NamedTuple, Optional, Tuple

from embed_proxy.config import RewriteContext, RewriteOptions
from embed_proxy.proxy.url_rewriter import rewrite_url

logger = logging.getLogger("uvicorn.error")

# Tag -> attribute carrying a reference that must stay inside the proxy
REWRITABLE_ATTRIBUTES = {
    "a": "href",
    "base": "href",
    "form": "action",
    "iframe": "src",
    "img": "src",
    "link": "href",
    "script": "src",
}

RAW_TEXT_TAGS = ("script", "style")

_DOCUMENT_MARKER = re.compile(r"<(?:!doctype|html|head|body)", re.IGNORECASE)
_TAG_NAME = re.compile(r"[A-Za-z][^\s/>]*")
_ATTR_NAME = re.compile(r"[^\s/>][^\s/>=]*")
_WHITESPACE = re.compile(r"\s*")
_UNQUOTED_VALUE = re.compile(r"[^\s>]*")
_RAW_TEXT_END = {
    tag: re.compile(rf"</{tag}(?=[\s/>]|$)", re.IGNORECASE) for tag in RAW_TEXT_TAGS
}

# Possessive runs: no backtracking into the whitespace or the bare value
_CSS_URL = re.compile(
    r"""url\(\s*+(?:"([^"]*+)"|'([^']*+)'|([^\s"'()]++))\s*+\)""", re.IGNORECASE
)

# top.location = self.location and its common spellings
_FRAME_BUSTER = re.compile(
    r"(?<![\w.$])(?:(?:window|self)\.)?(?:top|parent)\.location(?:\.href)?"
    r"\s*=(?!=)\s*"
    r"(?:(?:window|self|document)\.)?location(?:\.href)?(?![\w$.])"
)
_SERVICE_WORKER_REGISTER = re.compile(r"navigator\.serviceWorker\.register\s*\(")
_SERVICE_WORKER_STUB = "(function(){return new Promise(function(){})})("


class TokenKind(str, Enum):
    TEXT = "text"
    COMMENT = "comment"
    DECLARATION = "declaration"
    START_TAG = "start_tag"
    END_TAG = "end_tag"
    RAW_TEXT = "raw_text"


class Attribute(NamedTuple):
    """
    One attribute of a start tag.

    ``value_start``/``value_end`` delimit the value inside the source text,
    excluding quotes. Valueless attributes have ``value`` None and offsets -1.
    """

    name: str
    value: Optional[str]
    value_start: int
    value_end: int
    quote: str


class Token(NamedTuple):
    kind: TokenKind
    start: int
    end: int
    tag: str = ""
    attributes: Tuple[Attribute, ...] = ()
    self_closing: bool = False


def is_html_document(text: str) -> bool:
    """Whether ``text`` carries a document-level marker."""
    return _DOCUMENT_MARKER.search(text) is not None


def _parse_start_tag(source: str, lt: int) -> Optional[Token]:
    """Parse the start tag opening at ``lt``; None if it never terminates."""
    length = len(source)
    name_match = _TAG_NAME.match(source, lt + 1)
    tag = name_match.group().lower()
    pos = name_match.end()
    attributes: List[Attribute] = []

    while True:
        pos = _WHITESPACE.match(source, pos).end()
        if pos >= length:
            return None
        char = source[pos]
        if char == ">":
            end = pos + 1
            break
        if char == "/":
            pos += 1
            continue

        attr_match = _ATTR_NAME.match(source, pos)
        name = attr_match.group().lower()
        pos = attr_match.end()
        after_name = _WHITESPACE.match(source, pos).end()
        if after_name >= length or source[after_name] != "=":
            attributes.append(Attribute(name, None, -1, -1, ""))
            continue

        pos = _WHITESPACE.match(source, after_name + 1).end()
        if pos >= length:
            return None
        quote = source[pos]
        if quote in ("'", '"'):
            close = source.find(quote, pos + 1)
            if close == -1:
                return None
            attributes.append(Attribute(name, source[pos + 1 : close], pos + 1, close, quote))
            pos = close + 1
        else:
            value_match = _UNQUOTED_VALUE.match(source, pos)
            attributes.append(
                Attribute(name, value_match.group(), pos, value_match.end(), "")
            )
            pos = value_match.end()

    self_closing = source[end - 2] == "/"
    return Token(TokenKind.START_TAG, lt, end, tag, tuple(attributes), self_closing)


def tokenize(source: str) -> Iterator[Token]:
    """
    Split ``source`` into consecutive tokens covering every character exactly once.
    """
    length = len(source)
    pos = 0
    while pos < length:
        lt = source.find("<", pos)
        if lt == -1:
            yield Token(TokenKind.TEXT, pos, length)
            return
        if lt > pos:
            yield Token(TokenKind.TEXT, pos, lt)

        if source.startswith("<!--", lt):
            close = source.find("-->", lt + 4)
            end = length if close == -1 else close + 3
            yield Token(TokenKind.COMMENT, lt, end)
            pos = end
            continue

        following = source[lt + 1 : lt + 2]
        if following in ("!", "?"):
            close = source.find(">", lt + 2)
            end = length if close == -1 else close + 1
            yield Token(TokenKind.DECLARATION, lt, end)
            pos = end
            continue

        if following == "/":
            name_match = _TAG_NAME.match(source, lt + 2)
            if name_match is None:
                yield Token(TokenKind.TEXT, lt, lt + 1)
                pos = lt + 1
                continue
            close = source.find(">", name_match.end())
            if close == -1:
                yield Token(TokenKind.TEXT, lt, length)
                return
            yield Token(TokenKind.END_TAG, lt, close + 1, name_match.group().lower())
            pos = close + 1
            continue

        if _TAG_NAME.match(source, lt + 1) is None:
            yield Token(TokenKind.TEXT, lt, lt + 1)
            pos = lt + 1
            continue

        token = _parse_start_tag(source, lt)
        if token is None:
            # Unterminated tag: the remainder is left as it is
            yield Token(TokenKind.TEXT, lt, length)
            return
        yield token
        pos = token.end

        # Browsers ignore a self-closing slash on script and style
        if token.tag in RAW_TEXT_TAGS:
            closing = _RAW_TEXT_END[token.tag].search(source, pos)
            raw_end = length if closing is None else closing.start()
            if raw_end > pos:
                yield Token(TokenKind.RAW_TEXT, pos, raw_end, token.tag)
            pos = raw_end


def rewrite_css(css: str, context: RewriteContext) -> str:
    """Rewrite every ``url(...)`` reference in a CSS fragment."""

    def replacer(match: re.Match) -> str:
        double, single, bare = match.groups()
        original = next(v for v in (double, single, bare) if v is not None)
        rewritten = rewrite_url(original, context)
        if rewritten == original:
            return match.group(0)
        if double is not None:
            return f'url("{rewritten}")'
        if single is not None:
            return f"url('{rewritten}')"
        return f"url({rewritten})"

    return _CSS_URL.sub(replacer, css)


def neutralize_script(script: str, options: RewriteOptions) -> str:
    """Disarm frame-busting assignments and service worker registration."""
    if options.neutralize_frame_busters:
        script = _FRAME_BUSTER.sub("void 0", script)
    if options.block_service_workers:
        script = _SERVICE_WORKER_REGISTER.sub(_SERVICE_WORKER_STUB, script)
    return script


def _attribute_value(token: Token, name: str) -> Optional[Attribute]:
    for attribute in token.attributes:
        if attribute.name == name and attribute.value is not None:
            return attribute
    return None


def _is_meta_csp(token: Token) -> bool:
    if token.tag != "meta":
        return False
    http_equiv = _attribute_value(token, "http-equiv")
    return http_equiv is not None and html.unescape(
        http_equiv.value
    ).strip().lower().startswith("content-security-policy")


def _rewrite_start_tag(
    source: str, token: Token, context: RewriteContext
) -> str:
    """Return the start tag text with its references rewritten."""
    edits = []
    reference_attr = REWRITABLE_ATTRIBUTES.get(token.tag)
    for attribute in token.attributes:
        if attribute.value is None:
            continue
        original = html.unescape(attribute.value)
        if attribute.name == reference_attr:
            rewritten = rewrite_url(original, context)
        elif attribute.name == "style":
            rewritten = rewrite_css(original, context)
        else:
            continue
        if rewritten == original:
            continue
        escaped = html.escape(rewritten, quote=True)
        if not attribute.quote:
            escaped = f'"{escaped}"'
        edits.append((attribute.value_start, attribute.value_end, escaped))

    if not edits:
        return source[token.start : token.end]

    parts = []
    pos = token.start
    for start, end, text in edits:
        parts.append(source[pos:start])
        parts.append(text)
        pos = end
    parts.append(source[pos : token.end])
    return "".join(parts)


def rewrite_html(
    body: str, context: RewriteContext, options: Optional[RewriteOptions] = None
) -> str:
    """
    Rewrite references in an HTML document so they route through the proxy.

    Text without a document marker (``<!DOCTYPE``, ``<html``, ``<head``,
    ``<body``) is returned untouched.
    """
    if not is_html_document(body):
        return body
    options = options or RewriteOptions()

    output = []
    base_seen = False
    for token in tokenize(body):
        chunk = body[token.start : token.end]

        if token.kind == TokenKind.START_TAG:
            if options.strip_meta_csp and _is_meta_csp(token):
                logger.debug("Dropping <meta> Content-Security-Policy")
                continue
            rewritten = _rewrite_start_tag(body, token, context)
            if token.tag == "base" and not base_seen:
                href = _attribute_value(token, "href")
                if href is not None:
                    base_seen = True
                    context = context.rebased(html.unescape(href.value))
            chunk = rewritten

        elif token.kind == TokenKind.RAW_TEXT:
            if token.tag == "style":
                chunk = rewrite_css(chunk, context)
            else:
                chunk = neutralize_script(chunk, options)

        output.append(chunk)

    return "".join(output)
