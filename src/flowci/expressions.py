"""Condition / template expressions (the `${{ ... }}` mini-language).

Expressions are parsed into a small tree (Literal, Ref, Member, Call, Not,
And, Or, Compare) and evaluated against an ExprContext. Parsing never
touches run state; evaluation only reads the snapshot it is given.
"""

from __future__ import annotations

import hashlib
import inspect
import json
import math
import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .errors import UnsupportedExpression

STATUS_FUNCTIONS = frozenset({"always", "success", "failure", "cancelled"})


# ---------------------------------------------------------------------
# Tree
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Ref:
    name: str


@dataclass(frozen=True)
class Member:
    target: "Node"
    key: "Node"


@dataclass(frozen=True)
class Call:
    name: str
    args: Tuple["Node", ...] = ()


@dataclass(frozen=True)
class Not:
    operand: "Node"


@dataclass(frozen=True)
class And:
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Or:
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Compare:
    op: str
    left: "Node"
    right: "Node"


Node = Union[Literal, Ref, Member, Call, Not, And, Or, Compare]


# ---------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>-?(?:0x[0-9a-fA-F]+|\d+(?:\.\d+)?(?:[eE][+-]?\d+)?))
  | (?P<string>'(?:[^']|'')*')
  | (?P<op>==|!=|<=|>=|&&|\|\||[<>!().,\[\]*])
  | (?P<ident>[A-Za-z_][A-Za-z0-9_-]*)
    """,
    re.VERBOSE,
)


@dataclass(frozen=True)
class _Token:
    kind: str
    text: str
    pos: int


def _tokenize(text: str) -> List[_Token]:
    tokens: List[_Token] = []
    pos = 0
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m:
            raise UnsupportedExpression(f"unexpected character {text[pos]!r} at {pos}", text)
        kind = m.lastgroup or ""
        if kind != "ws":
            tokens.append(_Token(kind, m.group(kind), pos))
        pos = m.end()
    return tokens


# ---------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------

class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.i = 0

    def _peek(self) -> Optional[_Token]:
        return self.tokens[self.i] if self.i < len(self.tokens) else None

    def _accept(self, text: str) -> bool:
        tok = self._peek()
        if tok is not None and tok.kind == "op" and tok.text == text:
            self.i += 1
            return True
        return False

    def _expect(self, text: str) -> None:
        if not self._accept(text):
            tok = self._peek()
            where = f"'{tok.text}' at {tok.pos}" if tok else "end of expression"
            raise UnsupportedExpression(f"expected '{text}' but found {where}", self.text)

    def parse(self) -> Node:
        if not self.tokens:
            raise UnsupportedExpression("empty expression", self.text)
        node = self._or()
        tok = self._peek()
        if tok is not None:
            raise UnsupportedExpression(f"unexpected '{tok.text}' at {tok.pos}", self.text)
        return node

    def _or(self) -> Node:
        node = self._and()
        while self._accept("||"):
            node = Or(node, self._and())
        return node

    def _and(self) -> Node:
        node = self._compare()
        while self._accept("&&"):
            node = And(node, self._compare())
        return node

    def _compare(self) -> Node:
        left = self._not()
        tok = self._peek()
        if tok is not None and tok.kind == "op" and tok.text in ("==", "!=", "<", "<=", ">", ">="):
            self.i += 1
            return Compare(tok.text, left, self._not())
        return left

    def _not(self) -> Node:
        # binds tighter than comparisons: !a == b is (!a) == b
        if self._accept("!"):
            return Not(self._not())
        return self._postfix()

    def _postfix(self) -> Node:
        node = self._primary()
        while True:
            if self._accept("."):
                tok = self._peek()
                if tok is None or tok.kind not in ("ident", "op") or (tok.kind == "op" and tok.text != "*"):
                    raise UnsupportedExpression("expected property name after '.'", self.text)
                self.i += 1
                node = Member(node, Literal(tok.text))
            elif self._accept("["):
                key = self._or()
                self._expect("]")
                node = Member(node, key)
            else:
                return node

    def _primary(self) -> Node:
        tok = self._peek()
        if tok is None:
            raise UnsupportedExpression("unexpected end of expression", self.text)
        self.i += 1

        if tok.kind == "number":
            raw = tok.text
            if raw.lstrip("-").lower().startswith("0x"):
                return Literal(float(int(raw, 16)))
            return Literal(float(raw))
        if tok.kind == "string":
            return Literal(tok.text[1:-1].replace("''", "'"))
        if tok.kind == "op" and tok.text == "(":
            node = self._or()
            self._expect(")")
            return node
        if tok.kind == "ident":
            word = tok.text
            lowered = word.lower()
            if self._accept("("):
                args: List[Node] = []
                if not self._accept(")"):
                    args.append(self._or())
                    while self._accept(","):
                        args.append(self._or())
                    self._expect(")")
                if lowered not in _FUNCTIONS:
                    raise UnsupportedExpression(f"unknown function '{word}()'", self.text)
                return Call(lowered, tuple(args))
            if lowered == "true":
                return Literal(True)
            if lowered == "false":
                return Literal(False)
            if lowered == "null":
                return Literal(None)
            return Ref(word)
        raise UnsupportedExpression(f"unexpected '{tok.text}' at {tok.pos}", self.text)


def strip_wrapper(text: str) -> str:
    s = text.strip()
    if s.startswith("${{") and s.endswith("}}"):
        s = s[3:-2].strip()
    return s


@lru_cache(maxsize=512)
def parse(text: str) -> Node:
    """Parse an expression (optionally wrapped in `${{ }}`) into a tree."""
    return _Parser(strip_wrapper(text)).parse()


def uses_status_function(node: Node) -> bool:
    if isinstance(node, Call):
        if node.name in STATUS_FUNCTIONS:
            return True
        return any(uses_status_function(a) for a in node.args)
    if isinstance(node, Not):
        return uses_status_function(node.operand)
    if isinstance(node, (And, Or, Compare)):
        return uses_status_function(node.left) or uses_status_function(node.right)
    if isinstance(node, Member):
        return uses_status_function(node.target) or uses_status_function(node.key)
    return False


def parse_condition(text: Optional[str]) -> Node:
    """
    Parse an `if:` condition. Empty means success(); a condition without
    any status function is implicitly `success() && (cond)`.
    """
    if text is None or (isinstance(text, str) and not text.strip()):
        return Call("success")
    if isinstance(text, bool):
        return Literal(text)
    node = parse(str(text))
    if not uses_status_function(node):
        node = And(Call("success"), node)
    return node


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

@dataclass
class ExprContext:
    """
    Everything an expression may read.

    dependency_results: results of the job's `needs` (job-level `if`).
    step_failed: None for job-level conditions; for step conditions, whether
    an earlier step in the job failed.
    """
    contexts: Dict[str, Any] = field(default_factory=dict)
    dependency_results: Tuple[str, ...] = ()
    step_failed: Optional[bool] = None
    cancelled: bool = False


def truthy(value: Any) -> bool:
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value != 0 and not math.isnan(value)
    if isinstance(value, str):
        return value != ""
    return True


def _to_number(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return 0.0
        try:
            if s.lower().startswith("0x"):
                return float(int(s, 16))
            return float(s)
        except ValueError:
            return math.nan
    return math.nan


def _loose_equal(a: Any, b: Any) -> bool:
    if isinstance(a, str) and isinstance(b, str):
        return a.lower() == b.lower()
    if isinstance(a, (dict, list)) or isinstance(b, (dict, list)):
        return a is b
    if type(a) is type(b) and not isinstance(a, str):
        return a == b
    return _to_number(a) == _to_number(b)


def _compare(op: str, a: Any, b: Any) -> bool:
    if op == "==":
        return _loose_equal(a, b)
    if op == "!=":
        return not _loose_equal(a, b)
    if isinstance(a, str) and isinstance(b, str):
        x, y = a.lower(), b.lower()
    else:
        x, y = _to_number(a), _to_number(b)
        if math.isnan(x) or math.isnan(y):
            return False
    if op == "<":
        return x < y
    if op == "<=":
        return x <= y
    if op == ">":
        return x > y
    return x >= y


def to_string(value: Any) -> str:
    if value is None:
        return ""
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value, indent=2)
    return str(value)


def _lookup(container: Any, key: Any) -> Any:
    if isinstance(container, dict):
        if key == "*":
            return list(container.values())
        if key in container:
            return container[key]
        if isinstance(key, str):
            lowered = key.lower()
            for k, v in container.items():
                if isinstance(k, str) and k.lower() == lowered:
                    return v
        return None
    if isinstance(container, list):
        if key == "*":
            return container
        if isinstance(key, str) and not key.strip().lstrip("-").replace(".", "", 1).isdigit():
            # object filter: list.*.prop
            return [_lookup(item, key) for item in container]
        idx = _to_number(key)
        if math.isnan(idx) or not float(idx).is_integer():
            return None
        idx = int(idx)
        if 0 <= idx < len(container):
            return container[idx]
    return None


# --- function library ------------------------------------------------

def _fn_contains(ctx: ExprContext, search: Any, item: Any) -> bool:
    if isinstance(search, list):
        return any(_loose_equal(x, item) for x in search)
    return to_string(item).lower() in to_string(search).lower()


def _fn_starts_with(ctx: ExprContext, s: Any, prefix: Any) -> bool:
    return to_string(s).lower().startswith(to_string(prefix).lower())


def _fn_ends_with(ctx: ExprContext, s: Any, suffix: Any) -> bool:
    return to_string(s).lower().endswith(to_string(suffix).lower())


def _fn_format(ctx: ExprContext, fmt: Any, *args: Any) -> str:
    text = to_string(fmt)
    out: List[str] = []
    i = 0
    while i < len(text):
        ch = text[i]
        if text.startswith("{{", i):
            out.append("{")
            i += 2
        elif text.startswith("}}", i):
            out.append("}")
            i += 2
        elif ch == "{":
            end = text.find("}", i)
            if end == -1:
                raise UnsupportedExpression(f"invalid format string {text!r}")
            field_ = text[i + 1:end].strip()
            if not field_.isdigit():
                raise UnsupportedExpression(f"format placeholder {{{field_}}} is not an argument index")
            idx = int(field_)
            if idx >= len(args):
                raise UnsupportedExpression(f"format index {idx} out of range")
            out.append(to_string(args[idx]))
            i = end + 1
        else:
            out.append(ch)
            i += 1
    return "".join(out)


def _fn_join(ctx: ExprContext, items: Any, sep: Any = ",") -> str:
    if isinstance(items, list):
        return to_string(sep).join(to_string(x) for x in items)
    return to_string(items)


def _fn_to_json(ctx: ExprContext, value: Any) -> str:
    return json.dumps(value, indent=2)


def _fn_from_json(ctx: ExprContext, value: Any) -> Any:
    try:
        return json.loads(to_string(value))
    except ValueError as e:
        raise UnsupportedExpression(f"fromJSON: {e}")


def _fn_hash_files(ctx: ExprContext, *patterns: Any) -> str:
    # sha256 over the sha256 of every matching file; "" when nothing matches
    root = Path(to_string(_lookup(_lookup(ctx.contexts, "github"), "workspace")) or ".")
    files = set()
    for pattern in patterns:
        pattern = to_string(pattern)
        if not pattern or Path(pattern).is_absolute():
            raise UnsupportedExpression(f"hashFiles: pattern {pattern!r} must be relative to the workspace")
        try:
            files.update(p for p in root.glob(pattern) if p.is_file())
        except (ValueError, NotImplementedError, OSError) as e:
            raise UnsupportedExpression(f"hashFiles: bad pattern {pattern!r}: {e}")
    if not files:
        return ""
    digest = hashlib.sha256()
    for path in sorted(files):
        try:
            data = path.read_bytes()
        except OSError as e:
            raise UnsupportedExpression(f"hashFiles: cannot read {path}: {e}")
        digest.update(hashlib.sha256(data).digest())
    return digest.hexdigest()


def _fn_always(ctx: ExprContext) -> bool:
    return True


def _fn_cancelled(ctx: ExprContext) -> bool:
    return ctx.cancelled


def _fn_success(ctx: ExprContext) -> bool:
    if ctx.cancelled:
        return False
    if ctx.step_failed is not None:
        return not ctx.step_failed
    return all(r == "success" for r in ctx.dependency_results)


def _fn_failure(ctx: ExprContext) -> bool:
    if ctx.step_failed is not None:
        return ctx.step_failed
    return any(r == "failure" for r in ctx.dependency_results)


_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "always": _fn_always,
    "success": _fn_success,
    "failure": _fn_failure,
    "cancelled": _fn_cancelled,
    "contains": _fn_contains,
    "startswith": _fn_starts_with,
    "endswith": _fn_ends_with,
    "format": _fn_format,
    "join": _fn_join,
    "tojson": _fn_to_json,
    "fromjson": _fn_from_json,
    "hashfiles": _fn_hash_files,
}


def evaluate_node(node: Node, ctx: ExprContext) -> Any:
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, Ref):
        return _lookup(ctx.contexts, node.name)
    if isinstance(node, Member):
        return _lookup(evaluate_node(node.target, ctx), evaluate_node(node.key, ctx))
    if isinstance(node, Not):
        return not truthy(evaluate_node(node.operand, ctx))
    if isinstance(node, And):
        left = evaluate_node(node.left, ctx)
        return evaluate_node(node.right, ctx) if truthy(left) else left
    if isinstance(node, Or):
        left = evaluate_node(node.left, ctx)
        return left if truthy(left) else evaluate_node(node.right, ctx)
    if isinstance(node, Compare):
        return _compare(node.op, evaluate_node(node.left, ctx), evaluate_node(node.right, ctx))
    if isinstance(node, Call):
        fn = _FUNCTIONS.get(node.name)
        if fn is None:
            raise UnsupportedExpression(f"unknown function '{node.name}()'")
        args = [evaluate_node(a, ctx) for a in node.args]
        try:
            inspect.signature(fn).bind(ctx, *args)
        except TypeError:
            raise UnsupportedExpression(f"wrong number of arguments to '{node.name}()'")
        return fn(ctx, *args)
    raise UnsupportedExpression(f"cannot evaluate node {node!r}")


def evaluate(expr: Union[str, Node, None], ctx: ExprContext) -> bool:
    """Evaluate an `if:` condition to a boolean."""
    node = expr if not isinstance(expr, (str, type(None), bool)) else parse_condition(expr)
    return truthy(evaluate_node(node, ctx))


def evaluate_value(expr: str, ctx: ExprContext) -> Any:
    return evaluate_node(parse(expr), ctx)


TEMPLATE_RE = re.compile(r"\$\{\{(.*?)\}\}", re.DOTALL)


def render(text: Any, ctx: ExprContext) -> Any:
    """Substitute every `${{ expr }}` in text. Non-strings pass through."""
    if not isinstance(text, str) or "${{" not in text:
        return text
    return TEMPLATE_RE.sub(lambda m: to_string(evaluate_value(m.group(1), ctx)), text)


def render_mapping(mapping: Dict[str, Any], ctx: ExprContext) -> Dict[str, Any]:
    return {k: render(v, ctx) for k, v in mapping.items()}

