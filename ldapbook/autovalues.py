"""
Generated attribute values for new contacts.

An autovalue rule maps an attribute to a template, for example::

    "autovalues": {
        "mail": "{givenname}.{sn}@example.com",
        "uid": "md5(microtime())",
        "cn": "ucfirst(lower('{givenname}')) . ' ' . '{sn}'",
    }

Templates without parentheses are plain text with ``{attribute}``
placeholders.  Templates with parentheses are expressions in a small
language: string and integer literals, placeholders (also inside string
literals), ``.`` or ``+`` concatenation, and calls to the functions in
:py:data:`FUNCTIONS`.  Nothing else is evaluated.
"""

import hashlib
import logging
import re
import time
import uuid
from collections.abc import Callable, Mapping
from typing import Any

logger = logging.getLogger(__name__)

PLACEHOLDER = re.compile(r"\{(\w+)\}")


class AutovalueError(ValueError):
    """
    An autovalue template could not be parsed or evaluated.
    """


def _substr(value: str, start: int, length: int | None = None) -> str:
    start = int(start)
    if start < 0:
        start = max(0, len(value) + start)
    if length is None:
        return value[start:]
    length = int(length)
    if length < 0:
        return value[start:length]
    return value[start : start + length]


def _microtime() -> str:
    now = time.time()
    return f"{now - int(now):.8f} {int(now)}"


#: The functions templates may call
FUNCTIONS: dict[str, Callable[..., str]] = {
    "lower": lambda s: str(s).lower(),
    "strtolower": lambda s: str(s).lower(),
    "upper": lambda s: str(s).upper(),
    "strtoupper": lambda s: str(s).upper(),
    "ucfirst": lambda s: str(s)[:1].upper() + str(s)[1:],
    "ucwords": lambda s: re.sub(r"(^|\s)(\S)", lambda m: m.group(1) + m.group(2).upper(), str(s)),
    "trim": lambda s: str(s).strip(),
    "substr": lambda s, start, length=None: _substr(str(s), start, length),
    "replace": lambda s, old, new: str(s).replace(str(old), str(new)),
    "md5": lambda s: hashlib.md5(str(s).encode("utf-8")).hexdigest(),  # noqa: S324
    "sha1": lambda s: hashlib.sha1(str(s).encode("utf-8")).hexdigest(),  # noqa: S324
    "uniqid": lambda prefix="": f"{prefix}{uuid.uuid4().hex[:13]}",
    "microtime": _microtime,
}

TOKEN_PATTERN = re.compile(
    r"""
    \s*(?:
        (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
      | (?P<number>-?\d+)
      | (?P<placeholder>\{\w+\})
      | (?P<name>[A-Za-z_]\w*)
      | (?P<op>[().,+])
    )
    """,
    re.VERBOSE,
)


def tokenize(template: str) -> list[tuple[str, str]]:
    """
    Split an expression template into ``(kind, text)`` tokens.

    Raises:
        AutovalueError: the template contains a character that is not part of
            the language.

    """
    tokens: list[tuple[str, str]] = []
    pos = 0
    template = template.rstrip()
    while pos < len(template):
        match = TOKEN_PATTERN.match(template, pos)
        if not match or match.end() == pos:
            msg = f"Unexpected input at offset {pos}: {template[pos:]!r}"
            raise AutovalueError(msg)
        kind = match.lastgroup
        tokens.append((kind, match.group(kind)))  # type: ignore[arg-type]
        pos = match.end()
    return tokens


def substitute(text: str, values: Mapping[str, str]) -> str:
    """
    Replace ``{attribute}`` placeholders in ``text``; unknown placeholders
    become empty strings.
    """
    return PLACEHOLDER.sub(lambda m: values.get(m.group(1).lower(), ""), text)


class Expression:
    """
    A parsed expression template.

    Args:
        template: the template text

    Raises:
        AutovalueError: the template is not a valid expression

    """

    def __init__(self, template: str) -> None:
        self.template = template
        self.tokens = tokenize(template)
        self.pos = 0
        self.tree = self._concat()
        if self.pos != len(self.tokens):
            msg = f"Unexpected {self.tokens[self.pos][1]!r} in {template!r}"
            raise AutovalueError(msg)

    def _peek(self) -> tuple[str, str] | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _take(self, text: str | None = None) -> tuple[str, str]:
        token = self._peek()
        if token is None or (text is not None and token[1] != text):
            expected = repr(text) if text else "a value"
            msg = f"Expected {expected} in {self.template!r}"
            raise AutovalueError(msg)
        self.pos += 1
        return token

    def _concat(self) -> tuple:
        parts = [self._term()]
        while (token := self._peek()) is not None and token[1] in (".", "+"):
            self._take()
            parts.append(self._term())
        return ("concat", parts) if len(parts) > 1 else parts[0]

    def _term(self) -> tuple:
        kind, text = self._take()
        if kind == "string":
            body = re.sub(r"\\(.)", r"\1", text[1:-1])
            return ("text", body)
        if kind in ("number", "placeholder"):
            return ("text", text)
        if kind == "name":
            name = text.lower()
            if name not in FUNCTIONS:
                msg = f"Unknown function {text!r} in {self.template!r}"
                raise AutovalueError(msg)
            self._take("(")
            args = []
            if (token := self._peek()) is not None and token[1] != ")":
                args.append(self._concat())
                while (token := self._peek()) is not None and token[1] == ",":
                    self._take()
                    args.append(self._concat())
            self._take(")")
            return ("call", name, args)
        if text == "(":
            node = self._concat()
            self._take(")")
            return node
        msg = f"Unexpected {text!r} in {self.template!r}"
        raise AutovalueError(msg)

    def evaluate(self, values: Mapping[str, str]) -> str:
        """
        Evaluate the expression with ``values`` substituted for its
        placeholders.
        """
        return self._evaluate(self.tree, values)

    def _evaluate(self, node: tuple, values: Mapping[str, str]) -> str:
        if node[0] == "text":
            return substitute(node[1], values)
        if node[0] == "concat":
            return "".join(self._evaluate(part, values) for part in node[1])
        _, name, args = node
        try:
            return str(FUNCTIONS[name](*[self._evaluate(a, values) for a in args]))
        except (TypeError, ValueError) as e:
            msg = f"Cannot evaluate {name}() in {self.template!r}: {e}"
            raise AutovalueError(msg) from e


def render(template: str, values: Mapping[str, str]) -> str:
    """
    Render one autovalue template.

    Args:
        template: a plain template, or an expression if it contains ``(``
        values: lower-cased attribute name to value

    Raises:
        AutovalueError: the expression is invalid

    Returns:
        The generated value.

    """
    if "(" not in template:
        return substitute(template, values)
    return Expression(template).evaluate(values)


class Autovalues:
    """
    Fill in missing attributes of a new entry from configured templates.

    Args:
        rules: attribute name to template

    """

    def __init__(self, rules: Mapping[str, str]) -> None:
        self.rules = {attr.lower(): template for attr, template in rules.items()}

    def __bool__(self) -> bool:
        return bool(self.rules)

    def covers(self, attribute: str) -> bool:
        return attribute.lower() in self.rules

    def apply(self, attributes: dict[str, list[Any]]) -> dict[str, list[Any]]:
        """
        Add generated values for every rule whose attribute is missing from
        ``attributes``.  Rules that fail to evaluate are logged and skipped.

        Args:
            attributes: lower-cased attribute name to values; updated in place

        Returns:
            ``attributes``

        """
        values = {
            name: str(vals[0]) if isinstance(vals, list) else str(vals)
            for name, vals in attributes.items()
            if vals
        }
        for attr, template in self.rules.items():
            if attributes.get(attr):
                continue
            try:
                value = render(template, values)
            except AutovalueError as e:
                logger.warning("ldapbook.autovalues.failed attr=%s error=%s", attr, e)
                continue
            if value:
                attributes[attr] = [value]
                values[attr] = value
        return attributes
