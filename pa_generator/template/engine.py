"""G-code template expansion.

Expands the placeholder dialect used in slicer G-code snippets
(``start_gcode``, ``layer_gcode``, ...) against a variable environment.

Supported forms
---------------
- ``{if cond}``, ``{elsif cond}``, ``{else}``, ``{endif}``: conditional
  blocks, on one line or spanning several, nestable.  A line holding
  only block tags produces no output line.
- ``{expr}``: evaluated and substituted (see
  :mod:`pa_generator.template.expression`).
- ``{name = expr}`` / ``{name[k] = expr}``: assignment into the
  environment; emits nothing.  Later placeholders in the same expansion
  see the new value.
- ``[name]``: legacy form, replaced by element 0 of ``name`` if defined.

Variables
---------
The environment maps names to lists.  ``name`` reads element 0,
``name[k]`` and ``name_k`` read element ``k``; an index past the end
reads ``0``.  Numeric strings behave as numbers.

Failures never raise.  A failing condition counts as false, a failing
expression keeps its literal ``{...}`` text, and each failure is
recorded as a :class:`TemplateWarning` and logged.

Usage::

    engine = TemplateEngine()
    result = engine.expand("{if foo>2}yes{else}no{endif}", {"foo": "3"})
    result.text      # "yes"
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pa_generator.configs.loader import is_text_key
from pa_generator.template.expression import (
    DEFAULT_FUNCTIONS,
    ExpressionError,
    Function,
    Value,
    coerce,
    evaluate,
    format_number,
    truthy,
)

logger = logging.getLogger(__name__)

TOTAL_LAYER_COUNT = 25
DEFAULT_MAX_PRINT_HEIGHT = 250.0
DEFAULT_FILENAME_BASE = "PA_Test"

_ASSIGN_RE = re.compile(r"^\s*([A-Za-z_]\w*)\s*(?:\[\s*(\d+)\s*\])?\s*=(?!=)\s*(.+)$", re.S)
_BLOCK_RE = re.compile(r"^\s*(if|elsif)\b\s*(.*?)\s*$", re.S)
_ELSE_RE = re.compile(r"^\s*else\s*$")
_ENDIF_RE = re.compile(r"^\s*endif\s*$")
_REFERENCE_RE = re.compile(r"^\s*([A-Za-z_]\w*)\s*(?:\[\s*(\d+)\s*\])?\s*$")
_BRACKET_RE = re.compile(r"\[([A-Za-z_]\w*)\]")
_SUFFIX_INDEX_RE = re.compile(r"^(.+)_(\d+)$")
_ILLEGAL_FILENAME_RE = re.compile(r'[<>:"/\\|?*]')


@dataclass(frozen=True, slots=True)
class TemplateWarning:
    """One non-fatal template failure.

    Parameters
    ----------
    source : str
        Template slot name (``"start_gcode"``, ``"filename"``, ...).
    fragment : str
        Offending placeholder text.
    message : str
        What went wrong.
    """

    source: str
    fragment: str
    message: str

    def __str__(self) -> str:
        return f"{self.source}: {self.fragment}: {self.message}"


@dataclass
class Expansion:
    """Result of one template expansion."""

    text: str
    variables: dict[str, list[Any]]
    warnings: list[TemplateWarning] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Environment helpers
# ---------------------------------------------------------------------------


def normalize_variables(variables: Mapping[str, Any] | None) -> dict[str, list[Any]]:
    """Copy *variables* into the list-valued environment form.

    Strings are split on ``;`` unless the key holds free text; sequences
    are copied; anything else becomes a one-element list.
    """
    env: dict[str, list[Any]] = {}
    for key, value in (variables or {}).items():
        key = str(key)
        if isinstance(value, (list, tuple)):
            env[key] = list(value)
        elif isinstance(value, str):
            env[key] = [value] if is_text_key(key) else value.split(";")
        else:
            env[key] = [value]
    return env


def seed_defaults(env: dict[str, list[Any]]) -> dict[str, list[Any]]:
    """Fill in ``total_layer_count``, ``max_print_height`` and ``max_layer_z``."""
    env.setdefault("total_layer_count", [TOTAL_LAYER_COUNT])
    env.setdefault("max_print_height", [DEFAULT_MAX_PRINT_HEIGHT])
    if "max_layer_z" not in env and "layer_height" in env:
        try:
            layer_height = float(env["layer_height"][0])
            first = env.get("first_layer_height", env["layer_height"])
            first_layer_height = float(first[0]) if str(first[0]).strip() else layer_height
            total = int(float(env["total_layer_count"][0]))
        except (IndexError, TypeError, ValueError):
            logger.debug("Cannot derive max_layer_z from layer heights")
        else:
            env["max_layer_z"] = [first_layer_height + layer_height * (total - 1)]
    return env


def _element(values: list[Any], index: int) -> Any:
    if index < len(values):
        return values[index]
    return 0


# ---------------------------------------------------------------------------
# Tag splitting
# ---------------------------------------------------------------------------


def _split_tags(line: str) -> list[tuple[str, str]]:
    """Split *line* into ``("text", s)`` and ``("tag", body)`` chunks.

    Braces inside quoted strings do not close a tag.  An unterminated
    ``{`` is plain text.
    """
    chunks: list[tuple[str, str]] = []
    pos = 0
    while pos < len(line):
        start = line.find("{", pos)
        if start < 0:
            chunks.append(("text", line[pos:]))
            break
        end = _closing_brace(line, start)
        if end < 0:
            chunks.append(("text", line[pos:]))
            break
        if start > pos:
            chunks.append(("text", line[pos:start]))
        body = line[start + 1 : end]
        if body.strip():
            chunks.append(("tag", body))
        else:
            chunks.append(("text", line[start : end + 1]))
        pos = end + 1
    return chunks


def _closing_brace(line: str, start: int) -> int:
    depth = 0
    quote: str | None = None
    i = start
    while i < len(line):
        ch = line[i]
        if quote:
            if ch == "\\":
                i += 1
            elif ch == quote:
                quote = None
        elif ch in "\"'":
            quote = ch
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
        i += 1
    return -1


# ---------------------------------------------------------------------------
# Expansion session
# ---------------------------------------------------------------------------


@dataclass
class _Frame:
    parent_active: bool
    taken: bool
    active: bool


class _Session:
    """State of a single ``expand`` call."""

    def __init__(
        self,
        env: dict[str, list[Any]],
        source: str,
        functions: Mapping[str, Function],
        whole_value_fallback: bool = False,
    ) -> None:
        self.env = env
        self.source = source
        self.functions = functions
        self.whole_value_fallback = whole_value_fallback
        self.warnings: list[TemplateWarning] = []
        self.stack: list[_Frame] = []

    # -- lookups -----------------------------------------------------------

    def resolve(self, name: str, index: int | None) -> Any:
        """Raw environment element for ``name`` / ``name[k]`` / ``name_k``."""
        if index is None:
            if name in self.env:
                return _element(self.env[name], 0)
            match = _SUFFIX_INDEX_RE.match(name)
            if match and match.group(1) in self.env:
                return self._indexed(match.group(1), int(match.group(2)))
            raise ExpressionError(f"Unknown variable '{name}'")
        if name not in self.env:
            raise ExpressionError(f"Unknown variable '{name}'")
        return self._indexed(name, index)

    def _indexed(self, name: str, index: int) -> Any:
        values = self.env[name]
        if index >= len(values) and self.whole_value_fallback:
            return ";".join(str(v) for v in values)
        return _element(values, index)

    def lookup(self, name: str, index: int | None) -> Value:
        return coerce(self.resolve(name, index))

    def warn(self, fragment: str, message: str) -> None:
        warning = TemplateWarning(self.source, fragment, message)
        self.warnings.append(warning)
        logger.warning("Template %s: %s (%s)", self.source, message, fragment)

    # -- evaluation --------------------------------------------------------

    @property
    def active(self) -> bool:
        return self.stack[-1].active if self.stack else True

    def condition(self, text: str, fragment: str) -> bool:
        try:
            return truthy(evaluate(text, self.lookup, self.functions))
        except ExpressionError as exc:
            self.warn(fragment, f"condition treated as false: {exc}")
            return False

    def block_tag(self, body: str) -> bool:
        """Apply a block tag; return ``False`` if *body* is not one."""
        fragment = "{" + body + "}"
        match = _BLOCK_RE.match(body)
        if match and match.group(1) == "if":
            parent = self.active
            cond = self.condition(match.group(2), fragment) if parent else False
            self.stack.append(_Frame(parent, cond, parent and cond))
            return True
        if match:
            if not self.stack:
                self.warn(fragment, "{elsif} without matching {if}")
                return True
            frame = self.stack[-1]
            if frame.parent_active and not frame.taken:
                frame.active = self.condition(match.group(2), fragment)
                frame.taken = frame.active
            else:
                frame.active = False
            return True
        if _ELSE_RE.match(body):
            if not self.stack:
                self.warn(fragment, "{else} without matching {if}")
                return True
            frame = self.stack[-1]
            frame.active = frame.parent_active and not frame.taken
            frame.taken = True
            return True
        if _ENDIF_RE.match(body):
            if not self.stack:
                self.warn(fragment, "{endif} without matching {if}")
                return True
            self.stack.pop()
            return True
        return False

    def placeholder(self, body: str) -> str | None:
        """Expand ``{body}``; ``None`` means an assignment (no output)."""
        fragment = "{" + body + "}"
        assign = _ASSIGN_RE.match(body)
        reference = _REFERENCE_RE.match(body)
        try:
            if reference and reference.group(1).lower() not in ("true", "false"):
                # plain references keep the configured text ("0.20", "03")
                name, index = reference.groups()
                raw = self.resolve(name, int(index) if index else None)
                return raw if isinstance(raw, str) else format_number(coerce(raw))
            if assign:
                name, index, rhs = assign.groups()
                value = evaluate(rhs, self.lookup, self.functions)
                self.assign(name, int(index) if index else 0, value)
                return None
            return format_number(evaluate(body, self.lookup, self.functions))
        except ExpressionError as exc:
            self.warn(fragment, str(exc))
            return fragment

    def assign(self, name: str, index: int, value: Value) -> None:
        values = self.env.setdefault(name, [])
        while len(values) <= index:
            values.append(0)
        values[index] = value
        logger.debug("Template assignment %s[%d] = %r", name, index, value)

    def brackets(self, text: str) -> str:
        def _replace(match: re.Match[str]) -> str:
            name = match.group(1)
            if name in self.env:
                raw = _element(self.env[name], 0)
                return raw if isinstance(raw, str) else format_number(coerce(raw))
            return match.group(0)

        return _BRACKET_RE.sub(_replace, text)

    # -- driver ------------------------------------------------------------

    def run(self, template: str) -> str:
        out_lines: list[str] = []
        for line in template.split("\n"):
            chunks = _split_tags(line)
            if not chunks:
                if self.active:
                    out_lines.append("")
                continue

            parts: list[str] = []
            emitted = False
            for kind, body in chunks:
                if kind == "tag" and self.block_tag(body):
                    continue
                if not self.active:
                    continue
                if kind == "text":
                    parts.append(self.brackets(body))
                    emitted = True
                    continue
                text = self.placeholder(body)
                if text is not None:
                    parts.append(text)
                    emitted = True
            if emitted:
                out_lines.append("".join(parts))

        if self.stack:
            self.warn("{if}", f"{len(self.stack)} unterminated {{if}} block(s)")
            self.stack.clear()
        return "\n".join(out_lines)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


class TemplateEngine:
    """Expands G-code templates.

    Parameters
    ----------
    functions : Mapping[str, Function] | None
        Extra callables made available to expressions, merged over the
        defaults (``max``, ``min``, ``abs``, ``int``, ``round``,
        ``digits``).
    """

    def __init__(self, functions: Mapping[str, Function] | None = None) -> None:
        self.functions: dict[str, Function] = dict(DEFAULT_FUNCTIONS)
        if functions:
            self.functions.update(functions)

    def expand(
        self,
        template: str,
        variables: Mapping[str, Any] | None = None,
        source: str = "template",
    ) -> Expansion:
        """Expand *template* against *variables*.

        Parameters
        ----------
        template : str
            Template text.  Literal ``\\n`` sequences count as newlines.
        variables : Mapping[str, Any] | None
            Environment; not modified (assignments act on a copy which is
            returned in :attr:`Expansion.variables`).
        source : str
            Label used in warnings.

        Returns
        -------
        Expansion
        """
        env = seed_defaults(normalize_variables(variables))
        if not template:
            return Expansion("", env)
        session = _Session(env, source, self.functions)
        text = session.run(template.replace("\\n", "\n"))
        return Expansion(text, session.env, session.warnings)

    def expand_filename(
        self,
        template: str,
        variables: Mapping[str, Any] | None = None,
        now: datetime | None = None,
    ) -> Expansion:
        """Expand an ``output_filename_format`` into a safe file name.

        Seeds ``input_filename_base`` (``"PA_Test"``), ``timestamp``,
        ``year``, ``month``, ``day``, ``hour`` and ``minute`` when absent.
        ``{name[k]}`` past the end yields the whole value.  Characters
        ``<>:"/\\|?*`` become ``_`` and ``.gcode`` is appended if missing.
        """
        now = now or datetime.now()
        env = seed_defaults(normalize_variables(variables))
        env.setdefault("input_filename_base", [DEFAULT_FILENAME_BASE])
        env.setdefault("timestamp", [now.isoformat(timespec="seconds").replace(":", "-")])
        env.setdefault("year", [f"{now.year:04d}"])
        env.setdefault("month", [f"{now.month:02d}"])
        env.setdefault("day", [f"{now.day:02d}"])
        env.setdefault("hour", [f"{now.hour:02d}"])
        env.setdefault("minute", [f"{now.minute:02d}"])

        session = _Session(env, "filename", self.functions, whole_value_fallback=True)
        raw = session.run((template or "{input_filename_base}").replace("\n", " "))
        return Expansion(sanitize_filename(raw), session.env, session.warnings)


def sanitize_filename(name: str) -> str:
    """Replace illegal characters and ensure a ``.gcode`` extension."""
    name = _ILLEGAL_FILENAME_RE.sub("_", name).strip()
    if not name:
        name = DEFAULT_FILENAME_BASE
    if not name.lower().endswith(".gcode"):
        name += ".gcode"
    return name


def generate_filename(
    template: str,
    variables: Mapping[str, Any] | None = None,
    now: datetime | None = None,
) -> str:
    """Build the output file name from ``output_filename_format``.

    Example::

        >>> generate_filename(
        ...     "PA_{input_filename_base}_{digits(layer_height,0,2)}",
        ...     {"layer_height": "0.2", "input_filename_base": "Test"},
        ... )
        'PA_Test_0.20.gcode'
    """
    return TemplateEngine().expand_filename(template, variables, now).text
