"""Markup and stylesheet minification, and the character scan fonts are subset against."""

from __future__ import annotations

import codecs
import logging
import pathlib
import posixpath
import re
from typing import Iterable, Iterator, List, Optional, Tuple
from xml.etree import ElementTree as ET

import tinycss2
from bs4 import BeautifulSoup
from bs4.element import CData, Comment, NavigableString, Tag
from tinycss2.serializer import serialize_identifier

from .models import Outcome, Resource

log = logging.getLogger(__name__)

WHITESPACE = " \t\n\r\f"
WS_RUN = re.compile(r"[ \t\n\r\f]+")

XML_EXTENSIONS = {".xhtml", ".svg"}
PRESERVE_TAGS = {"pre", "textarea", "script", "style"}
BLOCK_TAGS = {
    "[document]", "html", "head", "body", "title", "meta", "link", "style", "script", "base",
    "div", "p", "section", "article", "aside", "header", "footer", "nav", "main", "hgroup",
    "h1", "h2", "h3", "h4", "h5", "h6", "ul", "ol", "li", "dl", "dt", "dd", "table", "thead",
    "tbody", "tfoot", "tr", "td", "th", "caption", "colgroup", "col", "blockquote", "figure",
    "figcaption", "hr", "br", "form", "fieldset", "legend", "address", "details", "summary",
    "noscript", "template",
    # SVG structure; text and tspan keep their whitespace
    "svg", "g", "defs", "symbol", "use", "path", "rect", "circle", "ellipse", "line",
    "polyline", "polygon", "image", "clippath", "mask", "lineargradient", "radialgradient",
    "stop", "filter", "metadata", "desc", "pattern", "marker",
}
EMPTY_DROPPABLE = ("class", "id", "style", "title", "lang")
DEFAULT_TYPES = {"script": "text/javascript", "style": "text/css", "link": "text/css"}

# Always kept when subsetting: digits, Latin letters and punctuation.
BASE_CHARACTERS = frozenset(chr(c) for c in range(0x20, 0x7F))


def is_stylesheet(path: str) -> bool:
    return path.lower().endswith(".css")


def parser_for(path: str, raw: bytes) -> str:
    """``xml`` for XHTML and SVG, ``html.parser`` for tag-soup HTML.

    Many books ship XHTML under a ``.html`` name, so the head of the file is
    sniffed as well.
    """
    if posixpath.splitext(path)[1].lower() in XML_EXTENSIONS:
        return "xml"
    head = raw[:2048]
    if head.lstrip(b"\xef\xbb\xbf" + WHITESPACE.encode()).startswith(b"<?xml"):
        return "xml"
    if b"http://www.w3.org/1999/xhtml" in head:
        return "xml"
    return "html.parser"


def well_formed(raw: bytes) -> bool:
    try:
        ET.fromstring(raw)
    except ET.ParseError:
        return False
    return True


# -- stylesheets ----------------------------------------------------------

SELECTOR_TIGHT = frozenset({",", ">", "+", "~"})
VALUE_TIGHT = frozenset({",", "/"})
NESTED_AT_RULES = {"media", "supports", "document", "-moz-document", "layer", "container", "scope"}
LENGTH_UNITS = {
    "px", "em", "rem", "ex", "ch", "pt", "pc", "cm", "mm", "in", "q",
    "vw", "vh", "vmin", "vmax",
}
HEX_COLOR = re.compile(r"[0-9a-fA-F]{3,8}")


class Unparseable(ValueError):
    pass


def _number(representation: str) -> str:
    sign = ""
    if representation[:1] in "+-":
        sign, representation = representation[0], representation[1:]
    if sign == "+":
        sign = ""
    if "e" in representation.lower():
        return sign + representation
    if "." in representation:
        whole, frac = representation.split(".", 1)
        whole, frac = whole.lstrip("0"), frac.rstrip("0")
        representation = f"{whole}.{frac}" if frac else (whole or "0")
    else:
        representation = representation.lstrip("0") or "0"
    if representation == "0":
        sign = ""
    return sign + representation


def _hash(token) -> str:
    value = token.value
    if len(value) not in (3, 4, 6, 8) or not HEX_COLOR.fullmatch(value):
        return token.serialize()
    value = value.lower()
    if len(value) == 6 and value[0] == value[1] and value[2] == value[3] and value[4] == value[5]:
        value = value[0] + value[2] + value[4]
    return "#" + value


def _token(token, tight, values: bool, nested: bool) -> str:
    kind = token.type
    if kind == "function":
        args = _compact(token.arguments, tight, values, nested=True)
        return f"{serialize_identifier(token.name)}({args})"
    if kind == "() block":
        return "(" + _compact(token.content, tight | {":"}, values, nested=True) + ")"
    if kind == "[] block":
        return "[" + _compact(token.content, frozenset(), False, nested=True) + "]"
    if not values:
        return token.serialize()
    if kind == "number":
        return _number(token.representation)
    if kind == "percentage":
        return _number(token.representation) + "%"
    if kind == "dimension":
        # a unitless zero is only interchangeable outside of functions like calc()
        if not nested and token.value == 0 and token.lower_unit in LENGTH_UNITS:
            return "0"
        text = token.serialize()
        return _number(token.representation) + text[len(token.representation):]
    if kind == "hash":
        return _hash(token)
    return token.serialize()


def _compact(tokens, tight=VALUE_TIGHT, values: bool = False, nested: bool = False) -> str:
    """Serialize component values with the least whitespace that keeps their meaning."""
    out: List[str] = []
    space = False
    glue = False
    for token in tokens:
        if token.type in ("whitespace", "comment"):
            space = True
            continue
        is_tight = token.type == "literal" and token.value in tight
        if space and out and not is_tight and not glue:
            out.append(" ")
        out.append(_token(token, tight, values, nested))
        glue = is_tight
        space = False
    return "".join(out)


def _declarations(nodes) -> str:
    parts = []
    blocks = []
    for node in nodes:
        if node.type in ("whitespace", "comment"):
            continue
        if node.type == "error":
            raise Unparseable(node.message)
        if node.type == "declaration":
            custom = node.name.startswith("--")
            value = _compact(node.value, VALUE_TIGHT, values=not custom)
            text = f"{node.name if custom else node.lower_name}:{value}"
            if node.important:
                text += "!important"
            parts.append(text)
        elif node.type == "at-rule":
            blocks.append(_at_rule(node))
        else:
            raise Unparseable(f"unexpected {node.type} in declaration block")
    return ";".join(parts + [b for b in blocks if b])


def _block_declarations(content) -> str:
    return _declarations(tinycss2.parse_declaration_list(content, skip_comments=True, skip_whitespace=True))


def _at_rule(node) -> str:
    head = "@" + serialize_identifier(node.at_keyword)
    prelude = _compact(node.prelude, VALUE_TIGHT)
    if prelude:
        head += " " + prelude
    if node.content is None:
        return head + ";"

    keyword = node.lower_at_keyword
    if keyword in NESTED_AT_RULES or keyword.endswith("keyframes"):
        body = _rules(tinycss2.parse_rule_list(node.content, skip_comments=True, skip_whitespace=True))
    else:
        body = _block_declarations(node.content)
    if not body:
        return ""
    return head + "{" + body + "}"


def _rules(nodes) -> str:
    out = []
    for node in nodes:
        if node.type in ("whitespace", "comment"):
            continue
        if node.type == "error":
            raise Unparseable(node.message)
        if node.type == "qualified-rule":
            body = _block_declarations(node.content)
            if body:
                out.append(_compact(node.prelude, SELECTOR_TIGHT) + "{" + body + "}")
        elif node.type == "at-rule":
            out.append(_at_rule(node))
    return "".join(out)


def minify_css(text: str) -> Optional[str]:
    """Minified stylesheet, or None when it does not parse cleanly."""
    if text.startswith("\ufeff"):
        text = text[1:]
    try:
        return _rules(tinycss2.parse_stylesheet(text, skip_comments=True, skip_whitespace=True))
    except Unparseable as e:
        log.debug("Stylesheet left as is: %s", e)
        return None


def minify_declarations(text: str) -> Optional[str]:
    """Minified ``style`` attribute value, or None when it does not parse."""
    try:
        return _declarations(tinycss2.parse_declaration_list(text, skip_comments=True, skip_whitespace=True))
    except Unparseable:
        return None


# -- documents ------------------------------------------------------------


def _name(node) -> str:
    return (node.name or "").lower()


def _preserved(text: NavigableString) -> bool:
    return any(_name(parent) in PRESERVE_TAGS for parent in text.parents)


def _boundary(node, parent) -> bool:
    """True if whitespace next to ``node`` cannot render."""
    if node is None:
        return parent is None or _name(parent) in BLOCK_TAGS
    if isinstance(node, Tag):
        return _name(node) in BLOCK_TAGS
    # doctype, processing instruction, CDATA
    return type(node) is not NavigableString


def _strip_comments(soup) -> None:
    for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
        if comment.startswith("[if") or comment.startswith("<![endif]"):
            continue
        comment.extract()


def _collapse_whitespace(soup) -> None:
    texts = [node for node in soup.descendants if type(node) is NavigableString]
    for text in texts:
        if _preserved(text):
            continue
        if not text.strip(WHITESPACE):
            parent = text.parent
            if _boundary(text.previous_sibling, parent) and _boundary(text.next_sibling, parent):
                text.extract()
            elif text != " ":
                text.replace_with(" ")
            continue
        collapsed = WS_RUN.sub(" ", text)
        if collapsed != text:
            text.replace_with(collapsed)


def _clean_attributes(soup, html: bool) -> None:
    for tag in soup.find_all(True):
        for attr in EMPTY_DROPPABLE:
            value = tag.attrs.get(attr)
            if value is None:
                continue
            if isinstance(value, list):
                value = " ".join(value)
            if not value.strip(WHITESPACE):
                del tag[attr]
        style = tag.attrs.get("style")
        if style:
            minified = minify_declarations(style)
            if minified is not None and len(minified) < len(style):
                tag["style"] = minified
        default = DEFAULT_TYPES.get(_name(tag)) if html else None
        if default and str(tag.get("type", "")).lower() == default:
            del tag["type"]


def _minify_style_blocks(soup) -> None:
    for tag in soup.find_all("style"):
        css = tag.string
        if css is None:
            continue
        minified = minify_css(str(css))
        if minified is not None and len(minified) < len(css):
            css.replace_with(CData(minified) if isinstance(css, CData) else minified)


def minify_document(raw: bytes, parser: str) -> Optional[bytes]:
    """Minified (X)HTML or SVG, or None when it cannot be rewritten safely."""
    soup = BeautifulSoup(raw, parser)
    encoding = codecs.lookup(soup.original_encoding or "utf-8").name
    if parser != "xml" and encoding not in ("utf-8", "ascii"):
        # re-encoding would contradict a meta charset
        return None
    _strip_comments(soup)
    soup.smooth()
    _collapse_whitespace(soup)
    _clean_attributes(soup, html=parser != "xml")
    _minify_style_blocks(soup)
    return soup.encode("utf-8", formatter="minimal")


# -- streaming ------------------------------------------------------------


CSS_OPENER = re.compile(r"/\*|[\"']")
HTML_OPENER = re.compile(r"<!--|<(?P<slash>/?)(?P<name>[A-Za-z][^\s/>]*)|<[!?]")
TAG_SCAN = re.compile(r"[\"'>]")


class StreamMinifier:
    """Comment stripping and whitespace collapsing, one piece of text at a time.

    Used for files too large to parse in memory and for documents the parsers
    would have to repair. Quoted strings (CSS strings, attribute values inside
    tags) and preserved elements are copied as they are. All state carries
    over from one piece to the next; pieces must not split a comment
    delimiter or a tag name, which ``pieces`` guarantees.
    """

    def __init__(self, css: bool = False, preserve=PRESERVE_TAGS):
        self.css = css
        if css:
            self.comment_open, self.comment_close = "/*", "*/"
            self.opener = CSS_OPENER
        else:
            self.comment_open, self.comment_close = "<!--", "-->"
            self.opener = HTML_OPENER
        self.preserve = {tag.lower() for tag in preserve}
        # CSS strings honour backslash escapes, HTML attribute values do not
        escape = r"\\.?|" if css else ""
        self.string_end = {q: re.compile(escape + q, re.S) for q in "\"'"}
        self.closing: Optional[re.Pattern] = None
        self.in_comment = False
        self.in_tag = False
        self.tag_name: Optional[str] = None
        self.quote: Optional[str] = None
        self.escaped = False
        self.space = False
        self.started = False

    @classmethod
    def for_css(cls) -> "StreamMinifier":
        return cls(css=True, preserve=())

    def _text(self, text: str, out: List[str]) -> None:
        for n, part in enumerate(WS_RUN.split(text)):
            if n:
                self.space = True
            if part:
                if self.space and self.started:
                    out.append(" ")
                out.append(part)
                self.space = False
                self.started = True

    def _raw(self, text: str, out: List[str]) -> None:
        if text:
            if self.space and self.started:
                out.append(" ")
            out.append(text)
            self.space = False
            self.started = True

    def _open_string(self, quote: str, out: List[str]) -> None:
        self._raw(quote, out)
        self.quote = quote

    def _string(self, piece: str, i: int, out: List[str]) -> int:
        start = i
        if self.escaped:
            self.escaped = False
            i += 1
        for m in self.string_end[self.quote].finditer(piece, i):
            token = m.group()
            if token == self.quote:
                self._raw(piece[start:m.end()], out)
                self.quote = None
                return m.end()
            if token == "\\":
                # backslash ends the piece; the escaped character comes next
                self.escaped = True
        self._raw(piece[start:], out)
        return len(piece)

    def _tag(self, piece: str, i: int, out: List[str]) -> int:
        m = TAG_SCAN.search(piece, i)
        if m is None:
            self._text(piece[i:], out)
            return len(piece)
        if m.group() != ">":
            self._text(piece[i:m.start()], out)
            self._open_string(m.group(), out)
            return m.end()
        self._text(piece[i:m.end()], out)
        self.in_tag = False
        if self.tag_name is not None:
            self.closing = re.compile(r"</%s\b" % re.escape(self.tag_name), re.I)
            self.tag_name = None
        return m.end()

    def _outside(self, piece: str, i: int, out: List[str]) -> int:
        m = self.opener.search(piece, i)
        if m is None:
            self._text(piece[i:], out)
            return len(piece)
        token = m.group()
        if token == self.comment_open:
            after = m.end()
            if piece.startswith("[if", after) or piece.startswith("<![endif]", after):
                self._text(piece[i:after], out)
                return after
            self._text(piece[i:m.start()], out)
            self.in_comment = True
            return after
        if self.css:
            self._text(piece[i:m.start()], out)
            self._open_string(token, out)
            return m.end()
        self._text(piece[i:m.end()], out)
        self.in_tag = True
        name = m.group("name")
        if name and not m.group("slash") and name.lower() in self.preserve:
            self.tag_name = name
        return m.end()

    def feed(self, piece: str) -> str:
        out: List[str] = []
        i, n = 0, len(piece)
        while i < n:
            if self.in_comment:
                end = piece.find(self.comment_close, i)
                if end < 0:
                    break
                i = end + len(self.comment_close)
                self.in_comment = False
            elif self.quote is not None:
                i = self._string(piece, i, out)
            elif self.closing is not None:
                m = self.closing.search(piece, i)
                if m is None:
                    self._raw(piece[i:], out)
                    break
                self._raw(piece[i:m.start()], out)
                i = m.start()
                self.closing = None
            elif self.in_tag:
                i = self._tag(piece, i, out)
            else:
                i = self._outside(piece, i, out)
        return "".join(out)

    def finish(self) -> str:
        # trailing whitespace is dropped
        return ""


def pieces(handle, size: int) -> Iterator[str]:
    """Read ``handle`` in roughly ``size`` character pieces, cut after whitespace or ``>``."""
    carry = ""
    while True:
        block = handle.read(size)
        if not block:
            if carry:
                yield carry
            return
        block = carry + block
        cut = max(block.rfind(c) for c in " \t\n>")
        if cut < 0:
            carry = block
            continue
        yield block[:cut + 1]
        carry = block[cut + 1:]


def minify_text(text: str, css: bool = False) -> str:
    minifier = StreamMinifier.for_css() if css else StreamMinifier()
    return minifier.feed(text) + minifier.finish()


def stream_minify(source: pathlib.Path, output: pathlib.Path, css: bool = False,
                  chunk_size: int = 1024 * 1024, check_cancelled=None) -> None:
    minifier = StreamMinifier.for_css() if css else StreamMinifier()
    with source.open("r", encoding="utf-8", newline="") as src, \
            output.open("w", encoding="utf-8", newline="") as dst:
        for piece in pieces(src, chunk_size):
            if check_cancelled:
                check_cancelled()
            dst.write(minifier.feed(piece))
        dst.write(minifier.finish())


def minify_bytes(path: str, raw: bytes) -> Optional[bytes]:
    """Minified form of the markup or stylesheet ``raw``; None if it must stay as is."""
    if is_stylesheet(path):
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            return None
        minified = minify_css(text)
        if minified is None:
            minified = minify_text(text, css=True)
        return minified.encode("utf-8")

    parser = parser_for(path, raw)
    if parser == "xml" and not well_formed(raw):
        # the XML parser would repair the tree, and may drop content doing so
        try:
            return minify_text(raw.decode("utf-8")).encode("utf-8")
        except UnicodeDecodeError:
            return None
    return minify_document(raw, parser)


def optimize_markup(resource: Resource, ctx) -> Tuple[Outcome, Optional[str]]:
    size = resource.size
    source = resource.file_path
    if size > min(ctx.config.markup_stream_threshold, ctx.stream_threshold):
        output = ctx.scratch_file()
        try:
            stream_minify(source, output, css=is_stylesheet(resource.path),
                          chunk_size=ctx.config.chunk_size, check_cancelled=ctx.check_cancelled)
        except UnicodeDecodeError:
            output.unlink(missing_ok=True)
            return Outcome.SKIPPED, "not_utf8"
        except BaseException:
            output.unlink(missing_ok=True)
            raise
    else:
        minified = minify_bytes(resource.path, source.read_bytes())
        if minified is None:
            return Outcome.SKIPPED, "unparseable"
        if len(minified) >= size:
            return Outcome.SKIPPED, "no_gain"
        output = ctx.scratch_file()
        output.write_bytes(minified)

    new_size = output.stat().st_size
    if new_size >= size:
        output.unlink()
        return Outcome.SKIPPED, "no_gain"
    ctx.install(resource, output)
    return Outcome.OPTIMIZED, f"{size}->{new_size}"


# -- characters -----------------------------------------------------------


def _css_strings(nodes) -> Iterator[str]:
    for node in nodes:
        if node.type == "string":
            yield node.value
        for attr in ("prelude", "content", "value", "arguments"):
            children = getattr(node, attr, None)
            if isinstance(children, list):
                yield from _css_strings(children)


def stylesheet_characters(text: str) -> set:
    """Characters a stylesheet can render itself, via ``content`` or ``quotes``."""
    chars = set()
    for value in _css_strings(tinycss2.parse_stylesheet(text, skip_comments=True)):
        chars.update(value)
    return chars


def document_characters(raw: bytes, parser: str) -> set:
    soup = BeautifulSoup(raw, parser)
    chars = set(soup.get_text())
    for tag in soup.find_all(True):
        for attr in ("alt", "title"):
            value = tag.get(attr)
            if isinstance(value, str):
                chars.update(value)
    for style in soup.find_all("style"):
        if style.string:
            chars.update(stylesheet_characters(str(style.string)))
    return chars


def referenced_characters(resources: Iterable[Resource], text_limit: Optional[int] = None) -> Optional[frozenset]:
    """Every character the book's documents could ask a font to draw.

    Returns None when any document cannot be scanned: without the full set no
    font may be subset.
    """
    chars = set(BASE_CHARACTERS)
    for resource in resources:
        if resource.protected:
            log.info("%s is encrypted; fonts will not be subset", resource.path)
            return None
        if text_limit is not None and resource.size > text_limit:
            log.info("%s is too large to scan for characters; fonts will not be subset", resource.path)
            return None
        try:
            raw = resource.content_path.read_bytes()
        except OSError as e:
            log.warning("Could not read %s: %s", resource.path, e)
            return None
        if is_stylesheet(resource.path):
            chars.update(stylesheet_characters(raw.decode("utf-8", "replace")))
        else:
            chars.update(document_characters(raw, parser_for(resource.path, raw)))

    for c in list(chars):
        chars.update(c.upper())
        chars.update(c.lower())
    return frozenset(chars)
