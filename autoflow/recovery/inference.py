"""DOM selector inference: regenerate robust selectors from a captured page snapshot."""

from __future__ import annotations

import logging
import re
from collections import deque
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from urllib.parse import urlsplit, urlunsplit

from bs4 import BeautifulSoup, Tag
from soupsieve import SelectorSyntaxError

from autoflow.core.types import (
    INTERACTION_TYPES,
    Node,
    NodeType,
    PageDebugInfo,
    SelectorSuggestion,
    SelectorUpdate,
    Workflow,
)
from autoflow.recovery.modifier import Patch, WorkflowModifier

logger = logging.getLogger(__name__)

_TEST_ID_ATTRS: tuple[str, ...] = ("data-testid", "data-test-id", "data-cy")

# Attributes compared against keyword hints
_HINT_ATTRS: tuple[str, ...] = ("name", "aria-label", "placeholder", "title", "value", *_TEST_ID_ATTRS)

_NON_CONTENT_TAGS = frozenset(
    {"html", "head", "body", "script", "style", "meta", "link", "title", "noscript", "br", "template"}
)
_TEXT_INPUT_TYPES = frozenset(
    {"text", "email", "password", "search", "tel", "url", "number", "date", "datetime-local", "month", "week", "time"}
)
_CLICKABLE_INPUT_TYPES = frozenset({"button", "submit", "reset", "checkbox", "radio", "image"})
_CLICKABLE_ROLES = frozenset({"button", "link", "tab", "menuitem", "checkbox", "radio", "option", "switch"})
_CLICKABLE_TAGS = frozenset({"button", "a", "summary", "label", "option"})

_STOP_WORDS = frozenset({"the", "a", "an", "and", "or", "on", "in", "to", "of", "for", "with", "nth", "child", "div", "span"})

# Keyword scoring weights, capped at 1.0
_W_TAG = 0.3
_W_ID = 0.4
_W_CLASS = 0.2
_W_TEXT = 0.3
_W_ATTR = 0.2

_MAX_PATH_DEPTH = 4
_MAX_TEXT_LEN = 80
_MAX_SUGGESTIONS = 5

_HAS_TEXT = re.compile(r"^(?P<base>.*?):has-text\((?P<q>['\"])(?P<text>.*?)(?P=q)\)$")
_CSS_SPECIAL = re.compile(r"([!\"#$%&'()*+,./;<=>?@\[\\\]^`{|}~])")


def css_escape(ident: str) -> str:
    return _CSS_SPECIAL.sub(r"\\\1", ident)


def _attr_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def tokenize(text: str) -> set[str]:
    spaced = re.sub(r"([a-z0-9])([A-Z])", r"\1 \2", text)
    return {w for w in re.findall(r"[a-z0-9]+", spaced.lower()) if len(w) > 1 and w not in _STOP_WORDS}


def _own_text(el: Tag) -> str:
    return " ".join(el.get_text(" ", strip=True).split())


def normalize_url(url: str) -> str:
    parts = urlsplit(url.strip())
    path = parts.path.rstrip("/")
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, parts.query, ""))


@dataclass
class _Hints:
    """What the failing selector and node label say about the intended element."""

    ids: set[str] = field(default_factory=set)
    classes: set[str] = field(default_factory=set)
    attr_values: set[str] = field(default_factory=set)
    texts: set[str] = field(default_factory=set)
    words: set[str] = field(default_factory=set)

    @classmethod
    def from_selector(cls, selector: str | None, *extra: str) -> "_Hints":
        hints = cls()
        if selector:
            hints.ids.update(re.findall(r"#([\w-]+)", selector))
            hints.classes.update(re.findall(r"\.([A-Za-z_][\w-]*)", selector))
            hints.attr_values.update(re.findall(r"\[[\w-]+[*^$~|]?=['\"]?([^'\"\]]+)", selector))
            hints.texts.update(t.lower() for t in re.findall(r"text=['\"]?([^'\"]+)", selector))
            hints.texts.update(t.lower() for t in re.findall(r":has-text\(['\"]([^'\"]+)", selector))
            hints.words |= tokenize(selector)
        for text in extra:
            if text:
                hints.words |= tokenize(text)
        return hints


class DOMSelectorInference:
    """
    Maps a DOM snapshot to replacement selectors for failing nodes.

    Selector preference, most stable first: test id, ``name``,
    ``aria-label``, unique ``id``, shortest unique structural path, and
    text content as a last resort. Every emitted selector is checked to
    match exactly the chosen element in the snapshot.
    """

    def __init__(self, modifier: WorkflowModifier | None = None) -> None:
        self._modifier = modifier or WorkflowModifier()

    @staticmethod
    def parse(html: str) -> BeautifulSoup:
        return BeautifulSoup(html, "html.parser")

    # ------------------------------------------------------------------
    # Selector resolution
    # ------------------------------------------------------------------

    def match(self, selector: str, soup: BeautifulSoup) -> list[Tag]:
        """
        Elements ``selector`` finds in the snapshot.

        Handles CSS, ``text=`` and ``:has-text()``. XPath and anything the
        CSS engine rejects yield no matches.
        """
        selector = selector.strip()
        if not selector or selector.startswith(("xpath=", "//", "(//")) or ">>" in selector:
            return []
        if selector.startswith("text="):
            value = selector[len("text="):]
            if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
                return self._match_text(soup, value[1:-1], exact=True)
            return self._match_text(soup, value, exact=False)
        if selector.startswith("css="):
            selector = selector[len("css="):]

        has_text = _HAS_TEXT.match(selector)
        if has_text:
            needle = has_text.group("text").lower()
            base = has_text.group("base") or "*"
            return [el for el in self._select(base, soup) if needle in _own_text(el).lower()]
        return self._select(selector, soup)

    def resolves(self, selector: str | None, soup: BeautifulSoup) -> bool:
        return bool(selector) and bool(self.match(selector, soup))

    @staticmethod
    def _select(selector: str, soup: BeautifulSoup) -> list[Tag]:
        try:
            return list(soup.select(selector))
        except (SelectorSyntaxError, NotImplementedError, ValueError):
            return []

    @staticmethod
    def _match_text(soup: BeautifulSoup, value: str, exact: bool) -> list[Tag]:
        target = " ".join(value.split())
        if not exact:
            target = target.lower()

        def _hit(el: Tag) -> bool:
            text = _own_text(el)
            return text == target if exact else target in text.lower()

        hits = [el for el in soup.find_all(True) if el.name not in _NON_CONTENT_TAGS and _hit(el)]
        # Innermost elements only
        hit_ids = {id(el) for el in hits}
        return [el for el in hits if not any(id(d) in hit_ids for d in el.find_all(True))]

    def _is_unique(self, selector: str, element: Tag, soup: BeautifulSoup) -> bool:
        found = self.match(selector, soup)
        return len(found) == 1 and found[0] is element

    # ------------------------------------------------------------------
    # Selector generation
    # ------------------------------------------------------------------

    def rank_selectors(self, element: Tag, soup: BeautifulSoup) -> list[str]:
        """Selectors that uniquely identify ``element``, most stable first."""
        candidates: list[str] = []
        for attr in _TEST_ID_ATTRS:
            value = element.get(attr)
            if value:
                candidates.append(f'[{attr}="{_attr_value(value)}"]')
        name = element.get("name")
        if name:
            candidates.append(f'{element.name}[name="{_attr_value(name)}"]')
        aria = element.get("aria-label")
        if aria:
            candidates.append(f'[aria-label="{_attr_value(aria)}"]')
        el_id = element.get("id")
        if el_id:
            candidates.append(self._id_selector(el_id))
        path = self._structural_path(element, soup)
        if path:
            candidates.append(path)
        text = _own_text(element)
        if text and len(text) <= _MAX_TEXT_LEN and '"' not in text:
            candidates.append(f'text="{text}"')

        ranked: list[str] = []
        for selector in candidates:
            if selector not in ranked and self._is_unique(selector, element, soup):
                ranked.append(selector)
        return ranked

    @staticmethod
    def _id_selector(el_id: str) -> str:
        if el_id[0].isdigit():
            return f'[id="{_attr_value(el_id)}"]'
        return "#" + css_escape(el_id)

    def _structural_path(self, element: Tag, soup: BeautifulSoup) -> str | None:
        """Shortest ``a > b > c`` chain (up to 4 levels) that matches only ``element``."""
        parts: list[str] = []
        node: Tag | None = element
        while node is not None and node.name not in ("body", "html", "[document]") and len(parts) < _MAX_PATH_DEPTH:
            if node is not element and node.get("id") and not node.get("id")[0].isdigit():
                parts.insert(0, "#" + css_escape(node["id"]))
                selector = " > ".join(parts)
                return selector if self._is_unique(selector, element, soup) else None
            part = node.name
            classes = [c for c in (node.get("class") or []) if c][:2]
            if classes:
                part += "." + ".".join(css_escape(c) for c in classes)
            same_tag = [s for s in node.find_previous_siblings(node.name)]
            if same_tag or node.find_next_sibling(node.name):
                part += f":nth-of-type({len(same_tag) + 1})"
            parts.insert(0, part)
            selector = " > ".join(parts)
            if self._is_unique(selector, element, soup):
                return selector
            node = node.parent if isinstance(node.parent, Tag) else None
        return None

    # ------------------------------------------------------------------
    # Candidate scoring
    # ------------------------------------------------------------------

    @staticmethod
    def _compatible(el: Tag, node_type: str) -> bool:
        tag = el.name
        if tag in _NON_CONTENT_TAGS or el.has_attr("hidden"):
            return False
        input_type = str(el.get("type", "text")).lower()
        if tag == "input" and input_type == "hidden":
            return False
        if node_type == NodeType.TYPE.value:
            return (
                tag == "textarea"
                or (tag == "input" and input_type in _TEXT_INPUT_TYPES)
                or el.get("contenteditable") in ("", "true")
            )
        if node_type == "select":
            return tag == "select"
        if node_type in (NodeType.CLICK.value, "hover"):
            return (
                tag in _CLICKABLE_TAGS
                or (tag == "input" and input_type in _CLICKABLE_INPUT_TYPES)
                or el.get("role") in _CLICKABLE_ROLES
                or el.has_attr("onclick")
            )
        return True

    @staticmethod
    def _score(el: Tag, hints: _Hints) -> float:
        score = _W_TAG
        el_id = el.get("id") or ""
        if el_id:
            if el_id in hints.ids or tokenize(el_id) & hints.words:
                score += _W_ID
            elif hints.ids:
                ratio = max(SequenceMatcher(None, el_id.lower(), h.lower()).ratio() for h in hints.ids)
                if ratio >= 0.6:
                    score += _W_ID * ratio
        classes = [c for c in (el.get("class") or []) if c]
        if set(classes) & hints.classes or any(tokenize(c) & hints.words for c in classes):
            score += _W_CLASS
        text = _own_text(el)[:200]
        if text and (text.lower() in hints.texts or tokenize(text) & hints.words):
            score += _W_TEXT
        for attr in _HINT_ATTRS:
            value = el.get(attr)
            if isinstance(value, str) and value and (value in hints.attr_values or tokenize(value) & hints.words):
                score += _W_ATTR
                break
        return min(score, 1.0)

    def find_candidates(self, node: Node, soup: BeautifulSoup) -> list[tuple[float, Tag]]:
        """Elements the node could target, best first; ties keep document order."""
        hints = _Hints.from_selector(node.selector, node.label, str(node.data.get("text") or ""))
        scored = [
            (self._score(el, hints), index, el)
            for index, el in enumerate(soup.find_all(True))
            if self._compatible(el, node.type)
        ]
        scored.sort(key=lambda item: (-item[0], item[1]))
        return [(score, el) for score, _, el in scored]

    def infer_selector(
        self,
        node: Node,
        soup: BeautifulSoup | str,
        claimed: set[int] | None = None,
    ) -> str | None:
        """
        Best replacement selector for ``node`` in the snapshot, or None.

        ``claimed`` holds the ``id()`` of elements other nodes already
        target; those are never offered. An element matched on tag alone is
        accepted only when it is the single compatible candidate left.
        """
        if isinstance(soup, str):
            soup = self.parse(soup)
        candidates = self.find_candidates(node, soup)
        if claimed:
            candidates = [(score, el) for score, el in candidates if id(el) not in claimed]
        if not candidates:
            return None
        best_score, best = candidates[0]
        if best_score <= _W_TAG and len(candidates) > 1:
            logger.debug(f"No distinguishing match for node {node.id} among {len(candidates)} candidates")
            return None
        ranked = self.rank_selectors(best, soup)
        return ranked[0] if ranked else None

    def suggest(
        self,
        page_source: str,
        failed_selector: str | None,
        keywords: tuple[str, ...] = (),
    ) -> list[SelectorSuggestion]:
        """Up to five selectors on the page that look like what ``failed_selector`` meant."""
        soup = self.parse(page_source)
        hints = _Hints.from_selector(failed_selector, *keywords)
        scored: list[tuple[float, int, Tag]] = []
        for index, el in enumerate(soup.find_all(True)):
            if el.name in _NON_CONTENT_TAGS:
                continue
            if not any(el.get(a) for a in ("id", "name", "aria-label", *_TEST_ID_ATTRS)):
                continue
            score = self._score(el, hints) - _W_TAG
            if score > 0:
                scored.append((score, index, el))
        scored.sort(key=lambda item: (-item[0], item[1]))

        suggestions: list[SelectorSuggestion] = []
        for score, _, el in scored:
            ranked = self.rank_selectors(el, soup)
            if not ranked:
                continue
            selector = ranked[0]
            suggestions.append(
                SelectorSuggestion(
                    selector=selector,
                    selector_type="text" if selector.startswith("text=") else "css",
                    reason=f"keyword match score {score + _W_TAG:.2f}",
                    element_info=self._describe(el),
                )
            )
            if len(suggestions) >= _MAX_SUGGESTIONS:
                break
        return suggestions

    @staticmethod
    def _describe(el: Tag) -> str:
        attrs = " ".join(
            f'{k}="{" ".join(v) if isinstance(v, list) else v}"'
            for k, v in el.attrs.items()
            if k in ("id", "class", "name", "type", "aria-label", *_TEST_ID_ATTRS)
        )
        text = _own_text(el)[:40]
        return f"<{el.name}{' ' + attrs if attrs else ''}>{text}"

    # ------------------------------------------------------------------
    # Workflow update
    # ------------------------------------------------------------------

    def update_selectors_for_page(
        self,
        workflow: Workflow,
        page_url: str,
        dom_context: PageDebugInfo | str,
    ) -> tuple[Workflow, list[SelectorUpdate]]:
        """
        Replace selectors that no longer resolve on ``page_url``.

        Only nodes recorded against that page are considered. Selectors that
        still resolve are left alone, so a second pass over the same
        snapshot changes nothing. Elements a resolving node already targets
        are never handed to a broken one. Returns a new workflow and the
        update log.
        """
        html = dom_context.page_source if isinstance(dom_context, PageDebugInfo) else dom_context
        soup = self.parse(html)
        target_url = normalize_url(page_url) if page_url else None

        broken: list[Node] = []
        claimed: set[int] = set()
        for node in workflow.nodes:
            if node.type not in INTERACTION_TYPES or node.selector is None:
                continue
            if target_url is not None:
                recorded = recorded_page_url(workflow, node.id)
                if recorded is not None and normalize_url(recorded) != target_url:
                    continue
            matched = self.match(node.selector, soup)
            if matched:
                claimed.update(id(el) for el in matched)
            else:
                broken.append(node)

        patches: list[Patch] = []
        updates: list[SelectorUpdate] = []
        for node in broken:
            replacement = self.infer_selector(node, soup, claimed)
            if replacement is None or replacement == node.selector:
                continue
            claimed.update(id(el) for el in self.match(replacement, soup))
            patches.append(Patch(node.id, "selector", replacement))
            updates.append(SelectorUpdate(node.id, node.selector, replacement))
            logger.info(f"Node {node.id}: selector {node.selector!r} -> {replacement!r}")

        if not patches:
            return workflow, []
        return self._modifier.apply_patches(workflow, patches).workflow, updates


def recorded_page_url(workflow: Workflow, node_id: str) -> str | None:
    """
    The page a node acts on.

    ``data["pageUrl"]`` when recorded, otherwise the URL of the nearest
    upstream navigate node. None when neither is known or the URL is
    templated.
    """
    node = workflow.node(node_id)
    if node is None:
        return None
    if isinstance(node.data.get("pageUrl"), str):
        return node.data["pageUrl"]

    incoming: dict[str, list[str]] = {}
    for edge in workflow.edges:
        incoming.setdefault(edge.target, []).append(edge.source)
    seen = {node_id}
    queue = deque(incoming.get(node_id, []))
    while queue:
        current = queue.popleft()
        if current in seen:
            continue
        seen.add(current)
        upstream = workflow.node(current)
        if upstream is not None and upstream.type == NodeType.NAVIGATE.value:
            url = upstream.data.get("url")
            if isinstance(url, str) and url and "${" not in url:
                return url
            return None
        queue.extend(incoming.get(current, []))
    return None
