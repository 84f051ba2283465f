"""HTML scraping helpers for the portal's login pages.

This module handles:
- A generic depth-first search over a document tree
- Locating login forms and collecting their input fields
- Finding <meta http-equiv="refresh"> redirect targets
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Tuple, TypeVar, Union
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag

from caruna_exporter.exceptions import FieldNotFoundError, FormNotFoundError, ParseError

# Configure module logger
logger = logging.getLogger(__name__)

N = TypeVar("N")
T = TypeVar("T")

Markup = Union[str, bytes, BeautifulSoup]


def element_children(node: Tag) -> List[Tag]:
    """Child elements of a BeautifulSoup node, skipping text and comments."""
    return [child for child in node.children if isinstance(child, Tag)]


def find_first(
    root: N,
    match: Callable[[N], Optional[T]],
    children: Callable[[N], Iterable[N]] = element_children,
) -> Optional[T]:
    """Return the first non-None result of ``match`` over the tree below ``root``.

    Nodes are visited depth-first, pre-order, in document order. ``root``
    itself is not visited. The walk keeps its own stack, so arbitrarily deep
    documents are fine.

    Args:
        root: Node whose descendants are searched
        match: Called per node, returns a value for a hit or None otherwise
        children: Returns the children of a node

    Returns:
        The first hit, or None if nothing matched
    """
    stack = list(reversed(list(children(root))))
    while stack:
        node = stack.pop()
        hit = match(node)
        if hit is not None:
            return hit
        stack.extend(reversed(list(children(node))))
    return None


def find_all(
    root: N,
    match: Callable[[N], Optional[T]],
    children: Callable[[N], Iterable[N]] = element_children,
) -> List[T]:
    """Like find_first, but collect every hit in document order."""
    hits: List[T] = []
    stack = list(reversed(list(children(root))))
    while stack:
        node = stack.pop()
        hit = match(node)
        if hit is not None:
            hits.append(hit)
        stack.extend(reversed(list(children(node))))
    return hits


def parse_html(markup: Markup) -> BeautifulSoup:
    """Parse markup into a BeautifulSoup tree.

    Raises:
        ParseError: If the document cannot be parsed
    """
    if isinstance(markup, BeautifulSoup):
        return markup
    try:
        return BeautifulSoup(markup, "html.parser")
    except Exception as e:
        raise ParseError(f"Cannot parse HTML document: {e}") from e


@dataclass(frozen=True)
class FormQuery:
    """Selects a form by its id or name attribute."""
    id: str = ""
    name: str = ""

    def matches(self, form: Tag) -> bool:
        if self.id and form.get("id") == self.id:
            return True
        if self.name and form.get("name") == self.name:
            return True
        return False

    def __bool__(self) -> bool:
        return bool(self.id or self.name)


@dataclass
class LoginForm:
    """A scraped HTML form.

    Attributes:
        action: The form's action attribute as written in the page. Relative
            actions are resolved by the caller against whichever page it
            submits from.
        fields: (name, value) pairs in document order. Names may repeat.
    """
    action: str
    fields: List[Tuple[str, str]] = field(default_factory=list)

    def values(self, name: str) -> List[str]:
        return [v for k, v in self.fields if k == name]

    def set_field(self, name: str, value: str) -> None:
        """Replace every value of ``name`` with a single ``value``.

        The new value takes the position of the first existing one; other
        fields are left untouched.

        Raises:
            FieldNotFoundError: If the form has no field called ``name``
        """
        positions = [i for i, (k, _) in enumerate(self.fields) if k == name]
        if not positions:
            raise FieldNotFoundError(name)
        first = positions[0]
        self.fields = [
            (k, v) for i, (k, v) in enumerate(self.fields)
            if k != name or i == first
        ]
        self.fields[first] = (name, value)

    def resolve_action(self, base_url: str) -> str:
        """Absolute action URL relative to ``base_url``."""
        return urljoin(base_url, self.action)


def _input_field(node: Tag) -> Optional[Tuple[str, str]]:
    if node.name != "input":
        return None
    name = node.get("name")
    if not name:
        return None
    return name, node.get("value", "")


def find_login_form(markup: Markup, query: Optional[FormQuery] = None) -> LoginForm:
    """Find a form and collect everything needed to submit it.

    Args:
        markup: HTML document
        query: Select the first form with this id or name. Without one, the
            first form in the document is used.

    Returns:
        The form's raw action and its input fields

    Raises:
        FormNotFoundError: If no form matches
    """
    soup = parse_html(markup)

    def is_wanted_form(node: Tag) -> Optional[Tag]:
        if node.name != "form":
            return None
        if query and not query.matches(node):
            return None
        return node

    form = find_first(soup, is_wanted_form)
    if form is None:
        raise FormNotFoundError(f"Cannot find login form (query: {query})")

    fields = find_all(form, _input_field)
    logger.debug(f"Found form with action {form.get('action', '')!r} and {len(fields)} fields")
    return LoginForm(action=form.get("action", ""), fields=fields)


def _refresh_target(node: Tag) -> Optional[str]:
    if node.name != "meta":
        return None
    if node.get("http-equiv", "").lower() != "refresh":
        return None
    content = node.get("content", "")
    marker = content.lower().find("url=")
    if marker == -1:
        return None
    return content[marker + len("url="):].strip().strip("'\"")


def find_meta_refresh_target(markup: Markup) -> Optional[str]:
    """Return the URL of the first meta-refresh tag, or None if there is none.

    The URL is returned as written in the page.
    """
    soup = parse_html(markup)
    target = find_first(soup, _refresh_target)
    return target or None
