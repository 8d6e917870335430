"""
Rule Engine and DSL Loader for exprimo

This module provides the expression builder, the s-expression reader and
writer, facilities for loading rewriting rules from DSL text or files, and
the RuleEngine that applies them.

DSL Format (.rules files):
    # Comment
    @rule-name: (pattern) => (skeleton)
    @rule-name "Description text": (pattern) => (skeleton)
    @rule-name[priority]: (pattern) => (skeleton) when (guard)

    Examples:
    @add-zero: (+ ?x 0) => :x
    @pow-pow "Nested powers": (** (** ?x ?a) ?b) => (** :x (* :a :b)) when (! integer? :b)

Pattern syntax:
    ?x or ?x:expr      - match any expression, bind to x
    ?x:const           - match constant only, bind to x
    ?x:var             - match symbol only, bind to x
    ?x:free(var)       - match expression not containing var
    ?x...              - match rest of arguments (variadic), bind to x

Skeleton syntax:
    :x      - substitute bound value of x
    :x...   - splice bound arguments
    (! op args...) - compute now (operators and guard predicates)
    literal - use as-is

Numbers read as int, float or exact fraction ("1/2").

JSON Format:
    {
        "name": "algebra",
        "description": "Algebraic simplification rules",
        "rules": [
            {"name": "add-zero", "description": "...", "pattern": [...], "skeleton": [...]},
            or just [pattern, skeleton]
        ]
    }

Besides pattern rules, an engine holds procedure rules: named Python
functions taking an expression and returning its rewrite, or None when they
do not apply. They express rewrites that are awkward as a single pattern,
such as argument ordering or like-term collection.

Tracing:
    Use RuleEngine.simplify(expr, trace=True) to see which rules are applied.
"""

import json
import logging
import re
from fractions import Fraction
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .errors import IterationLimit
from .expression import ExprType, compound, sort_key, substitute
from .parse import parse_expression
from .properties import Op, as_operator, is_number
from .rewriter import (
    Bindings, _NoMatch, check_condition, instantiate, match as _match_internal,
    fold_constants, match_all,
)

logger = logging.getLogger(__name__)

# Default step budget of one rewrite to normal form.
MAX_ITERATIONS = 10000

# Upper bound on passes over the phases of a SequencedEngine.
MAX_ROUNDS = 50

ProcedureType = Callable[[ExprType], Optional[ExprType]]

_MISSING = object()
_FRACTION_RE = re.compile(r'^-?\d+/\d+$')
_NUMBER_START_RE = re.compile(r'^[-+]?\.?\d')


# ============================================================
# Expression Builder
# ============================================================

class _ExprBuilder:
    """
    Expression builder for exprimo.

    Provides convenient ways to construct expressions.

    Examples:
        from exprimo import E

        # Parse s-expression string
        expr = E("(+ x (* 2 y))")

        # Build programmatically with E.op()
        expr = E.op("+", "x", E.op("*", 2, "y"))

        # Create variables
        x, y = E.vars("x", "y")
        expr = E.op("+", x, E.op("*", 2, y))

        # Infix text, with known names folded in as constants
        expr = E.infix("a * x + b", {"a": 2, "b": 3})   # (+ (* 2 x) 3)
    """

    def __call__(self, s: str) -> ExprType:
        """
        Parse an s-expression string.

        Examples:
            E("(+ x 1)") -> (Op.ADD, "x", 1)
            E("(** x 1/2)") -> (Op.POW, "x", Fraction(1, 2))
        """
        return parse_sexpr(s)

    def op(self, name: Union[str, Op], *args) -> Tuple:
        """
        Build a compound expression with the given operator and arguments.

        Examples:
            E.op("+", "x", 1) -> (Op.ADD, "x", 1)
            E.op(Op.MUL, 2, "y") -> (Op.MUL, 2, "y")
        """
        op = as_operator(name)
        if op is None:
            raise ValueError(f"Unknown operator: {name!r}")
        return (op,) + tuple(args)

    def var(self, name: str) -> str:
        """
        Create a variable.

        Variables are just strings. This method exists for clarity
        and to document intent.

        Example:
            E.var("x") -> "x"
        """
        return name

    def vars(self, *names: str) -> Tuple[str, ...]:
        """
        Create multiple variables for unpacking.

        Example:
            x, y, z = E.vars("x", "y", "z")
        """
        return names

    def const(self, value: Union[int, float, Fraction]) -> Union[int, float, Fraction]:
        """
        Create a constant.

        Example:
            E.const(5) -> 5
            E.const(Fraction(1, 2)) -> Fraction(1, 2)
        """
        if not is_number(value):
            raise TypeError(f"Not a numeric constant: {value!r}")
        return value

    def matrix(self, name: str, rows: int, cols: int) -> Tuple:
        """
        Create a matrix-typed operand.

        Example:
            E.matrix("A", 10, 30) -> (Op.MATRIX, "A", 10, 30)
        """
        return (Op.MATRIX, name, rows, cols)

    def infix(self, text: str, env: Optional[Dict[str, Any]] = None) -> ExprType:
        """
        Parse infix text; names bound in env become constants and closed
        subtrees are folded.

        Example:
            E.infix("x ** n + 1", {"n": 2}) -> (Op.ADD, (Op.POW, "x", 2), 1)
        """
        expr = parse_expression(text)
        if env:
            expr = substitute(expr, env)
        return fold_constants(expr)

    def __repr__(self) -> str:
        return "E (expression builder)"


# Singleton instance
E = _ExprBuilder()


def _parse_atom(s: str) -> Any:
    # Try number first
    try:
        return int(s)
    except ValueError:
        pass
    if _FRACTION_RE.match(s):
        return Fraction(s)
    if _NUMBER_START_RE.match(s):
        try:
            return float(s)
        except ValueError:
            pass

    # Pattern variable syntax conversion
    if s.startswith('?'):
        rest = s[1:]

        # Check for rest pattern (ends with ...)
        is_rest = rest.endswith('...')
        if is_rest:
            rest = rest[:-3]

        # Typed syntax: ?name:type or ?name:free(var)
        if ':' in rest:
            name_part, type_part = rest.split(':', 1)
            name = name_part.strip() or 'x'

            if is_rest:
                if type_part in ('const', 'var'):
                    return ("?...", name, type_part)
                return ("?...", name)
            if type_part == 'const':
                return ("?c", name)
            if type_part == 'var':
                return ("?v", name)
            if type_part.startswith('free(') and type_part.endswith(')'):
                return ("?free", name, type_part[5:-1].strip())
            return ("?", name)

        name = rest.strip() or 'x'
        if is_rest:
            return ("?...", name)
        return ("?", name)

    if s.startswith(':') and len(s) > 1:
        rest = s[1:].strip()
        if rest.endswith('...'):
            return (":...", rest[:-3].strip())
        return (":", rest)

    # Plain symbol
    return s


def _split_top_level(body: str) -> List[str]:
    parts = []
    depth = 0
    current = ''
    for c in body:
        if c == '(':
            depth += 1
            current += c
        elif c == ')':
            depth -= 1
            if depth < 0:
                raise ValueError("Unbalanced parentheses")
            current += c
        elif c in ' \t\n' and depth == 0:
            if current.strip():
                parts.append(current.strip())
            current = ''
        else:
            current += c
    if depth != 0:
        raise ValueError("Unbalanced parentheses")
    if current.strip():
        parts.append(current.strip())
    return parts


def parse_sexpr(s: str) -> ExprType:
    """
    Parse an S-expression string into a nested tuple.

    Operator names in head position become Op members, as does the
    operator named right after a compute marker.

    Examples:
        "(+ x 1)" -> (Op.ADD, "x", 1)
        "(! + :a :b)" -> ("!", Op.ADD, (":", "a"), (":", "b"))
    """
    s = s.strip()
    if not s:
        return None

    if s.startswith('('):
        if not s.endswith(')'):
            raise ValueError(f"Unbalanced parentheses: {s}")
        parts = [parse_sexpr(p) for p in _split_top_level(s[1:-1])]
        if parts and isinstance(parts[0], str):
            op = as_operator(parts[0])
            if op is not None:
                parts[0] = op
            elif parts[0] == '!' and len(parts) > 1 and isinstance(parts[1], str):
                parts[1] = as_operator(parts[1]) or parts[1]
        return tuple(parts)

    return _parse_atom(s)


def format_sexpr(expr: ExprType, dsl_syntax: bool = True) -> str:
    """
    Format an expression as an S-expression string.

    Args:
        expr: Expression to format
        dsl_syntax: If True, use DSL syntax for patterns (?x, :x).
                    If False, use raw tuple syntax ((? x), (: x)).

    Examples:
        (Op.ADD, "x", 1) -> "(+ x 1)"
        ("?", "x") -> "?x" (with dsl_syntax=True)
        ("?c", "n") -> "?n:const" (with dsl_syntax=True)
        Fraction(1, 2) -> "1/2"
    """
    if isinstance(expr, tuple):
        if not expr:
            return "()"

        # Handle pattern/skeleton DSL syntax
        head = expr[0]
        if dsl_syntax and not isinstance(head, Op) and len(expr) == 2:
            if head == "?":
                return f"?{expr[1]}"
            elif head == ":":
                return f":{expr[1]}"
            elif head == "?c":
                return f"?{expr[1]}:const"
            elif head == "?v":
                return f"?{expr[1]}:var"
            elif head == "?...":
                return f"?{expr[1]}..."
            elif head == ":...":
                return f":{expr[1]}..."

        if dsl_syntax and not isinstance(head, Op) and len(expr) == 3:
            if head == "?free":
                return f"?{expr[1]}:free({expr[2]})"
            elif head == "?...":
                return f"?{expr[1]}:{expr[2]}..."

        parts = [format_sexpr(e, dsl_syntax) for e in expr]
        return "(" + " ".join(parts) + ")"
    elif isinstance(expr, Op):
        return expr.value
    elif isinstance(expr, Fraction):
        return f"{expr.numerator}/{expr.denominator}"
    else:
        return str(expr)


def _from_json(obj: Any) -> Any:
    """Convert JSON lists into tuples with Op heads."""
    if isinstance(obj, list):
        items = [_from_json(o) for o in obj]
        if items and isinstance(items[0], str):
            items[0] = as_operator(items[0]) or items[0]
            if items[0] == '!' and len(items) > 1 and isinstance(items[1], str):
                items[1] = as_operator(items[1]) or items[1]
        return tuple(items)
    if isinstance(obj, str) and _FRACTION_RE.match(obj):
        return Fraction(obj)
    return obj


def _to_json(obj: Any) -> Any:
    """Convert tuples into JSON-serializable lists."""
    if isinstance(obj, tuple):
        return [_to_json(o) for o in obj]
    if isinstance(obj, Op):
        return obj.value
    if isinstance(obj, Fraction):
        return f"{obj.numerator}/{obj.denominator}"
    return obj


class RuleMetadata:
    """Metadata for a rule including name, description, priority, and condition."""

    def __init__(self, name: Optional[str] = None, description: Optional[str] = None,
                 tags: Optional[List[str]] = None, condition: Optional[ExprType] = None,
                 priority: int = 0, procedure: Optional[ProcedureType] = None,
                 ops: Optional[Tuple[Op, ...]] = None):
        self.name = name
        self.description = description
        self.tags = tags or []
        self.condition = condition  # Optional guard condition
        self.priority = priority  # Higher priority fires first (default: 0)
        self.procedure = procedure  # Set for procedure rules
        self.ops = ops  # Heads a procedure rule applies to; None for any

    def __repr__(self) -> str:
        base = ""
        if self.name:
            if self.priority != 0:
                base = f"@{self.name}[{self.priority}]"
            else:
                base = f"@{self.name}"
            if self.description:
                base += f" \"{self.description}\""
        else:
            base = "<anonymous>"

        if self.condition:
            base += f" when {format_sexpr(self.condition)}"
        return base


def parse_rule_line(line: str) -> Optional[Tuple[RuleMetadata, ExprType, ExprType]]:
    """
    Parse a single rule line.

    Formats:
        @name: pattern => skeleton
        @name[priority]: pattern => skeleton
        @name "description": pattern => skeleton
        @name[priority] "description": pattern => skeleton
        @name: pattern => skeleton when condition
        pattern => skeleton

    Returns: (metadata, pattern, skeleton) or None if not a rule
    """
    line = line.strip()

    # Skip empty lines and comments
    if not line or line.startswith('#'):
        return None

    metadata = RuleMetadata()
    if line.startswith('@'):
        for regex, fields in (
            (r'@([\w-]+)\[(-?\d+)\]\s+"([^"]+)":\s*(.+)', ("name", "priority", "description")),
            (r'@([\w-]+)\[(-?\d+)\]:\s*(.+)', ("name", "priority")),
            (r'@([\w-]+)\s+"([^"]+)":\s*(.+)', ("name", "description")),
            (r'@([\w-]+):\s*(.+)', ("name",)),
        ):
            match_obj = re.match(regex, line)
            if match_obj:
                for i, field in enumerate(fields, 1):
                    value = match_obj.group(i)
                    setattr(metadata, field, int(value) if field == "priority" else value)
                line = match_obj.group(len(fields) + 1)
                break

    # Must have =>
    if '=>' not in line:
        return None

    pattern_str, rest = (part.strip() for part in line.split('=>', 1))

    # Find 'when' at top level (not inside parentheses)
    skeleton_str = rest
    depth = 0
    for i, c in enumerate(rest):
        if c == '(':
            depth += 1
        elif c == ')':
            depth -= 1
        elif depth == 0 and rest[i:i + 4] == 'when' and (i == 0 or rest[i - 1].isspace()):
            after = i + 4
            if after >= len(rest) or rest[after].isspace():
                skeleton_str = rest[:i].strip()
                metadata.condition = parse_sexpr(rest[after:].strip())
                break

    pattern = parse_sexpr(pattern_str)
    skeleton = parse_sexpr(skeleton_str)

    if pattern is None or skeleton is None:
        return None

    return (metadata, pattern, skeleton)


def load_rules_from_dsl(
    text: str,
    base_path: Optional[Path] = None,
    _included_files: Optional[set] = None
) -> List[Tuple[RuleMetadata, Tuple]]:
    """
    Load rules from DSL text.

    Supports:
    - Named groups: [groupname]
    - File includes: :include path/to/file.rules

    Example:
        [identities]
        @add-zero: (+ ?x 0) => :x

        :include trig.rules

    Args:
        text: DSL text containing rules
        base_path: Base path for resolving relative :include paths
        _included_files: Internal tracking for circular include detection

    Returns:
        List of (metadata, (pattern, skeleton)) tuples
    """
    rules = []
    current_group = None

    if _included_files is None:
        _included_files = set()

    for line in text.split('\n'):
        line_stripped = line.strip()

        # Group declaration: [groupname]
        if line_stripped.startswith('[') and line_stripped.endswith(']'):
            current_group = line_stripped[1:-1].strip()
            continue

        # Include directive: :include path
        if line_stripped.startswith(':include '):
            include_path_str = line_stripped[9:].strip()
            if include_path_str:
                include_path = base_path / include_path_str if base_path else Path(include_path_str)
                abs_path = include_path.resolve()
                if abs_path in _included_files:
                    raise ValueError(f"Circular include detected: {include_path}")
                if not include_path.exists():
                    raise FileNotFoundError(f"Include file not found: {include_path}")
                _included_files.add(abs_path)
                included_rules = load_rules_from_file(include_path, _included_files=_included_files)
                for meta, _ in included_rules:
                    if current_group and not meta.tags:
                        meta.tags.append(current_group)
                rules.extend(included_rules)
            continue

        result = parse_rule_line(line)
        if result:
            metadata, pattern, skeleton = result
            if current_group and current_group not in metadata.tags:
                metadata.tags.append(current_group)
            rules.append((metadata, (pattern, skeleton)))
    return rules


def load_rules_from_file(
    path: Union[str, Path],
    _included_files: Optional[set] = None
) -> List[Tuple[RuleMetadata, Tuple]]:
    """
    Load rules from a .rules or .json file.

    Supports :include directives for DSL files, resolving paths
    relative to the containing file.
    """
    path = Path(path)
    text = path.read_text()

    if path.suffix == '.json':
        return load_rules_from_json(text)
    return load_rules_from_dsl(text, base_path=path.parent, _included_files=_included_files)


def load_rules_from_json(text: str) -> List[Tuple[RuleMetadata, Tuple]]:
    """
    Load rules from JSON text.

    Expected format:
        {
            "name": "ruleset-name",
            "rules": [
                {
                    "name": "rule-name",
                    "description": "...",
                    "pattern": [...],
                    "skeleton": [...],
                    "priority": 100,  # optional
                    "condition": [...],  # optional guard expression
                    "tags": ["group1"]  # optional
                },
                or just [pattern, skeleton]
            ]
        }
    """
    data = json.loads(text)
    rules = []

    for rule in data.get('rules', []):
        if isinstance(rule, dict):
            condition = rule.get('condition')
            metadata = RuleMetadata(
                name=rule.get('name'),
                description=rule.get('description'),
                tags=rule.get('tags'),
                priority=rule.get('priority', 0),
                condition=_from_json(condition) if condition is not None else None,
            )
            pattern = _from_json(rule['pattern'])
            skeleton = _from_json(rule['skeleton'])
        else:
            metadata = RuleMetadata()
            pattern, skeleton = _from_json(rule[0]), _from_json(rule[1])
        rules.append((metadata, (pattern, skeleton)))

    return rules


class RewriteStep:
    """A single step in a rewriting trace."""

    def __init__(self, rule_index: int, metadata: RuleMetadata,
                 before: ExprType, after: ExprType):
        self.rule_index = rule_index
        self.metadata = metadata
        self.before = before
        self.after = after

    @property
    def rule_name(self) -> str:
        return self.metadata.name or f"rule[{self.rule_index}]"

    def __repr__(self) -> str:
        return f"{self.rule_name}: {format_sexpr(self.before)} -> {format_sexpr(self.after)}"

    def to_dict(self) -> Dict:
        """Convert step to dictionary for serialization."""
        return {
            "rule_index": self.rule_index,
            "rule_name": self.metadata.name,
            "description": self.metadata.description,
            "before": _to_json(self.before),
            "after": _to_json(self.after),
        }


class RewriteTrace:
    """
    A trace of all rewriting steps applied.

    Provides multiple formatting options:
        - Default repr: verbose multi-line format
        - format("compact"): single line showing rule chain
        - format("rules"): just the rule names applied
        - format("chain"): expression transformations as a chain
        - to_dict(): JSON-serializable dictionary
    """

    def __init__(self):
        self.steps: List[RewriteStep] = []
        self.initial: ExprType = None
        self.final: ExprType = None

    def add_step(self, step: RewriteStep):
        self.steps.append(step)

    def format(self, style: str = "verbose") -> str:
        """
        Format the trace in different styles.

        Args:
            style: One of "verbose", "compact", "rules", "chain"
        """
        if style == "compact":
            rules = [s.rule_name for s in self.steps]
            return f"{format_sexpr(self.initial)} --[{', '.join(rules)}]--> {format_sexpr(self.final)}"

        elif style == "rules":
            rules = [s.rule_name for s in self.steps]
            return " -> ".join(rules) if rules else "(no rules applied)"

        elif style == "chain":
            if not self.steps:
                return format_sexpr(self.initial)
            parts = [format_sexpr(self.initial)]
            for step in self.steps:
                parts.append(f"  --({step.rule_name})-->")
                parts.append(format_sexpr(step.after))
            return "\n".join(parts)

        else:  # verbose (default)
            return repr(self)

    def __repr__(self) -> str:
        lines = [f"Initial: {format_sexpr(self.initial)}"]
        for i, step in enumerate(self.steps, 1):
            if step.metadata.description:
                lines.append(f"  {i}. {step} ({step.metadata.description})")
            else:
                lines.append(f"  {i}. {step}")
        lines.append(f"Final: {format_sexpr(self.final)}")
        return "\n".join(lines)

    def __len__(self) -> int:
        return len(self.steps)

    def __iter__(self):
        """Iterate over rewrite steps."""
        return iter(self.steps)

    def __bool__(self) -> bool:
        """True if any rewriting was done."""
        return len(self.steps) > 0

    def to_dict(self) -> Dict:
        """Convert trace to dictionary for JSON serialization."""
        return {
            "initial": _to_json(self.initial),
            "final": _to_json(self.final),
            "steps": [step.to_dict() for step in self.steps],
            "step_count": len(self.steps),
        }

    def rules_applied(self) -> List[str]:
        """Get list of rule names in order of application."""
        return [s.rule_name for s in self.steps]


class RuleEngine:
    """
    A rule engine that loads and applies rewriting rules.

    Supports loading rules from DSL files, JSON files, Python lists and
    Python functions (procedure rules). Provides optional tracing to see
    which rules are applied.

    Example:
        from exprimo import RuleEngine

        engine = RuleEngine.from_dsl('''
            @add-zero "Adding zero has no effect": (+ ?x 0) => :x
            @mul-one: (* ?x 1) => :x
        ''')
        result = engine(expr)

    Rules are kept sorted by priority (stable, so equal priorities keep
    their listing order) and indexed by the operator at the head of their
    pattern. Normal forms computed by the exhaustive strategy are memoized
    per engine; any change to the rules or groups clears the memo.
    """

    def __init__(self):
        self._rules: List[Tuple] = []
        self._metadata: List[RuleMetadata] = []
        self._rule_names: Dict[str, int] = {}  # Maps name -> index
        self._disabled_groups: set = set()  # Groups that are disabled
        self._index: Optional[Dict[Any, List[int]]] = None
        self._cache: Dict[Tuple, ExprType] = {}

    def _invalidate(self) -> None:
        self._index = None
        self._cache = {}

    def _sort_by_priority(self) -> None:
        """Sort rules by priority (descending). Higher priority fires first.

        Uses stable sort, so rules with equal priority maintain their relative order.
        """
        indexed = sorted(range(len(self._rules)), key=lambda i: -self._metadata[i].priority)
        self._rules = [self._rules[i] for i in indexed]
        self._metadata = [self._metadata[i] for i in indexed]

        self._rule_names = {}
        for idx, meta in enumerate(self._metadata):
            if meta.name:
                self._rule_names[meta.name] = idx
        self._invalidate()

    def _extend(self, parsed: List[Tuple[RuleMetadata, Tuple]]) -> 'RuleEngine':
        for metadata, rule in parsed:
            self._rules.append(tuple(rule))
            self._metadata.append(metadata)
        self._sort_by_priority()
        return self

    def load_dsl(self, text: str) -> 'RuleEngine':
        """Load rules from DSL text."""
        return self._extend(load_rules_from_dsl(text))

    def load_file(self, path: Union[str, Path]) -> 'RuleEngine':
        """Load rules from a file (.rules or .json)."""
        return self._extend(load_rules_from_file(path))

    def add_rule(self, pattern: Union[str, ExprType], skeleton: Union[str, ExprType],
                 name: Optional[str] = None,
                 description: Optional[str] = None,
                 condition: Union[str, ExprType, None] = None,
                 priority: int = 0) -> 'RuleEngine':
        """Add a single rule with optional metadata."""
        if isinstance(pattern, str):
            pattern = parse_sexpr(pattern)
        if isinstance(skeleton, str):
            skeleton = parse_sexpr(skeleton)
        if isinstance(condition, str):
            condition = parse_sexpr(condition)
        metadata = RuleMetadata(name=name, description=description,
                                condition=condition, priority=priority)
        return self._extend([(metadata, (pattern, skeleton))])

    def add_procedure(self, procedure: ProcedureType, name: Optional[str] = None,
                      description: Optional[str] = None,
                      ops: Optional[Tuple[Op, ...]] = None,
                      priority: int = 0) -> 'RuleEngine':
        """
        Add a procedure rule.

        Args:
            procedure: Function from an expression to its rewrite, or None
                when the rule does not apply
            ops: Operators whose nodes the procedure inspects (None for all)
        """
        metadata = RuleMetadata(name=name or procedure.__name__, description=description,
                                priority=priority, procedure=procedure,
                                ops=tuple(ops) if ops else None)
        return self._extend([(metadata, (None, None))])

    # ============================================================
    # Group Management
    # ============================================================

    def disable_group(self, group: str) -> 'RuleEngine':
        """Disable all rules in a group."""
        self._disabled_groups.add(group)
        self._invalidate()
        return self

    def enable_group(self, group: str) -> 'RuleEngine':
        """Enable all rules in a group."""
        self._disabled_groups.discard(group)
        self._invalidate()
        return self

    def groups(self) -> set:
        """Return all group names used by rules."""
        all_groups = set()
        for meta in self._metadata:
            all_groups.update(meta.tags)
        return all_groups

    def _is_rule_active(self, metadata: RuleMetadata, groups: Optional[List[str]] = None) -> bool:
        """Check if a rule should be applied given current group settings.

        Args:
            metadata: The rule's metadata
            groups: If specified, only rules in these groups (and untagged
                    rules) are active. If None, use the disabled_groups setting.
        """
        if not metadata.tags:
            return True
        if groups is not None:
            return any(g in groups for g in metadata.tags)
        return not any(g in self._disabled_groups for g in metadata.tags)

    # ============================================================
    # Rule Dispatch
    # ============================================================

    def _build_index(self) -> Dict[Any, List[int]]:
        """Map each operator to the indices of rules that can fire at its nodes."""
        by_head: Dict[Any, List[int]] = {}
        anywhere: List[int] = []
        for idx, (rule, meta) in enumerate(zip(self._rules, self._metadata)):
            if meta.procedure is not None:
                heads = meta.ops
            else:
                pattern = rule[0]
                heads = (pattern[0],) if compound(pattern) else None
            if heads is None:
                anywhere.append(idx)
            else:
                for head in heads:
                    by_head.setdefault(head, []).append(idx)
        index = {op: sorted(by_head.get(op, []) + anywhere) for op in Op}
        index[None] = anywhere
        return index

    def _candidates(self, expr: ExprType) -> List[int]:
        if self._index is None:
            self._index = self._build_index()
        return self._index[expr[0] if compound(expr) else None]

    def match(self, pattern: Union[str, ExprType], expr: ExprType) -> Union[Bindings, _NoMatch]:
        """
        Match a pattern against an expression.

        Returns Bindings if matched, NoMatch if not.

        Example:
            if bindings := engine.match("(+ ?a ?b)", expr):
                print(bindings["a"], bindings["b"])
        """
        if isinstance(pattern, str):
            pattern = parse_sexpr(pattern)
        return _match_internal(pattern, expr)

    def _try_rule(self, rule_idx: int, expr: ExprType) -> Any:
        """Rewrite expr with one rule; _MISSING if the rule does not change it."""
        metadata = self._metadata[rule_idx]
        if metadata.procedure is not None:
            result = metadata.procedure(expr)
            if result is None or result == expr:
                return _MISSING
            return result
        pattern, skeleton = self._rules[rule_idx]
        for bindings in match_all(pattern, expr):
            if not check_condition(metadata.condition, bindings):
                continue
            result = instantiate(skeleton, bindings)
            if result != expr:
                return result
        return _MISSING

    def apply_once(self, expr: ExprType,
                   groups: Optional[List[str]] = None) -> Tuple[ExprType, Optional[RuleMetadata]]:
        """
        Apply at most one rule to the expression.

        Tries each rule in order and returns after the first application
        that changes the expression. Does not recurse into subexpressions.
        Respects conditional guards and group filters; when a guard rejects
        one way of matching, the next way is tried.

        Returns:
            Tuple of (result, metadata) where metadata is None if no rule applied.

        Example:
            result, applied = engine.apply_once(expr)
            if applied:
                print(f"Applied rule: {applied.name}")
        """
        for rule_idx in self._candidates(expr):
            metadata = self._metadata[rule_idx]
            if not self._is_rule_active(metadata, groups):
                continue
            result = self._try_rule(rule_idx, expr)
            if result is not _MISSING:
                return result, metadata
        return expr, None

    def rules_matching(self, expr: ExprType, check_conditions: bool = True,
                       groups: Optional[List[str]] = None) -> List[Tuple[RuleMetadata, Bindings]]:
        """
        Find all pattern rules that could apply to an expression.

        Useful for debugging and understanding why an expression isn't simplifying.

        Example:
            for meta, bindings in engine.rules_matching(expr):
                print(f"Rule {meta.name} matches with {bindings.to_dict()}")
        """
        matching = []
        for rule_idx in self._candidates(expr):
            metadata = self._metadata[rule_idx]
            if metadata.procedure is not None or not self._is_rule_active(metadata, groups):
                continue
            for raw_bindings in match_all(self._rules[rule_idx][0], expr):
                if check_conditions and not check_condition(metadata.condition, raw_bindings):
                    continue
                matching.append((metadata, Bindings(raw_bindings)))
                break
        return matching

    # ============================================================
    # Strategies
    # ============================================================

    def rewrite(self, expr: ExprType, max_steps: int = MAX_ITERATIONS,
                groups: Optional[List[str]] = None) -> ExprType:
        """
        Rewrite expr to normal form, innermost first.

        Children are normalized before their parent; after a rule fires at
        a node, the new node is normalized again. The result is a fixpoint:
        no active rule applies anywhere in it.

        Raises:
            IterationLimit: more than max_steps rule applications were needed
        """
        if groups is None:
            cache = self._cache
            if len(cache) > 100000:
                cache.clear()
        else:
            cache = {}
        budget = [max_steps]

        def normalize(e: ExprType) -> ExprType:
            key = sort_key(e)
            hit = cache.get(key, _MISSING)
            if hit is not _MISSING:
                return hit
            node = (e[0],) + tuple(normalize(c) for c in e[1:]) if compound(e) else e
            while True:
                result, applied = self.apply_once(node, groups)
                if applied is None:
                    break
                budget[0] -= 1
                if budget[0] < 0:
                    raise IterationLimit(f"no normal form within {max_steps} steps")
                hit = cache.get(sort_key(result), _MISSING)
                if hit is not _MISSING:
                    node = hit
                    break
                node = (result[0],) + tuple(normalize(c) for c in result[1:]) \
                    if compound(result) else result
            cache[key] = node
            return node

        return normalize(expr)

    def simplify(
        self,
        expr: ExprType,
        trace: bool = False,
        max_steps: int = MAX_ITERATIONS,
        strategy: str = "exhaustive",
        groups: Optional[List[str]] = None
    ):
        """
        Simplify an expression using all loaded rules.

        Args:
            expr: Expression to simplify
            trace: If True, return (result, trace) tuple
            max_steps: Maximum rewrite steps
            strategy: Rewriting strategy (default: "exhaustive")
                - "exhaustive": Rewrite innermost-first to normal form (default)
                - "once": Apply at most one rule anywhere in the expression
                - "bottomup": Simplify children first, then parent, repeat until fixpoint
                - "topdown": Try to simplify parent first, then children, repeat until fixpoint
            groups: If specified, only use rules from these groups.
                    If None, use all rules except those in disabled groups.

        Returns:
            Simplified expression, or (expression, trace) if trace=True.
            If the exhaustive strategy runs out of steps, the input is
            returned unchanged.
        """
        if trace:
            return self._simplify_with_trace(expr, max_steps, groups=groups)

        if strategy == "exhaustive":
            try:
                return self.rewrite(expr, max_steps=max_steps, groups=groups)
            except IterationLimit as e:
                logger.warning("Rewriting stopped, returning input unchanged: %s", e)
                return expr
        elif strategy == "once":
            return self._simplify_once(expr, groups=groups)
        elif strategy == "bottomup":
            return self._fixpoint(self._bottomup_pass, expr, max_steps, groups)
        elif strategy == "topdown":
            return self._fixpoint(self._topdown_pass, expr, max_steps, groups)
        else:
            raise ValueError(f"Unknown strategy: {strategy}. "
                             f"Valid options: exhaustive, once, bottomup, topdown")

    def _simplify_once(self, expr: ExprType, groups: Optional[List[str]] = None) -> ExprType:
        """Apply at most one rule anywhere in the expression tree."""
        result, applied = self.apply_once(expr, groups=groups)
        if applied:
            return result

        # If no rule applied at top level, try children (depth-first)
        if compound(expr):
            for i, child in enumerate(expr[1:], 1):
                new_child = self._simplify_once(child, groups=groups)
                if new_child != child:
                    return expr[:i] + (new_child,) + expr[i + 1:]

        return expr

    def _fixpoint(self, single_pass, expr: ExprType, max_steps: int,
                  groups: Optional[List[str]]) -> ExprType:
        for _ in range(max_steps):
            new_expr = single_pass(expr, groups)
            if new_expr == expr:
                break
            expr = new_expr
        return expr

    def _bottomup_pass(self, expr: ExprType, groups: Optional[List[str]] = None) -> ExprType:
        """Single bottom-up pass: simplify children, then apply rules to parent."""
        current = expr
        if compound(expr):
            current = (expr[0],) + tuple(self._bottomup_pass(c, groups) for c in expr[1:])
        result, _ = self.apply_once(current, groups)
        return result

    def _topdown_pass(self, expr: ExprType, groups: Optional[List[str]] = None) -> ExprType:
        """Single top-down pass: apply rules to parent, then simplify children."""
        result, applied = self.apply_once(expr, groups)
        if applied:
            return result  # Return immediately - will be called again

        if compound(expr):
            return (expr[0],) + tuple(self._topdown_pass(c, groups) for c in expr[1:])
        return expr

    def _simplify_with_trace(self, expr: ExprType, max_steps: int,
                             groups: Optional[List[str]] = None) -> Tuple[ExprType, RewriteTrace]:
        """Innermost-first rewriting that records every step."""
        trace_obj = RewriteTrace()
        trace_obj.initial = expr
        budget = [max_steps]

        def normalize(e: ExprType) -> ExprType:
            node = (e[0],) + tuple(normalize(c) for c in e[1:]) if compound(e) else e
            while budget[0] > 0:
                index_before = self._candidates(node)
                result, applied = self.apply_once(node, groups)
                if applied is None:
                    break
                budget[0] -= 1
                rule_idx = next(i for i in index_before if self._metadata[i] is applied)
                trace_obj.add_step(RewriteStep(rule_idx, applied, node, result))
                node = (result[0],) + tuple(normalize(c) for c in result[1:]) \
                    if compound(result) else result
            return node

        current = normalize(expr)
        trace_obj.final = current
        return current, trace_obj

    def clear(self) -> 'RuleEngine':
        """Clear all rules."""
        self._rules = []
        self._metadata = []
        self._rule_names = {}
        self._invalidate()
        return self

    def _format_rule(self, rule: Tuple, meta: RuleMetadata) -> str:
        if meta.name:
            name_part = f"@{meta.name}[{meta.priority}]" if meta.priority != 0 else f"@{meta.name}"
            if meta.description:
                name_part += f" \"{meta.description}\""
            name_part += ": "
        else:
            name_part = ""

        if meta.procedure is not None:
            return f"# {name_part}<procedure {meta.procedure.__name__}>"

        pattern, skeleton = rule
        rule_str = f"{name_part}{format_sexpr(pattern)} => {format_sexpr(skeleton)}"
        if meta.condition:
            rule_str += f" when {format_sexpr(meta.condition)}"
        return rule_str

    def list_rules(self) -> List[str]:
        """List all rules with their metadata in DSL format."""
        return [self._format_rule(rule, meta) for rule, meta in zip(self._rules, self._metadata)]

    def to_dict(self) -> Dict:
        """
        Export pattern rules to a dictionary.

        Procedure rules are not serializable and are left out.
        """
        rules_list = []
        for rule, meta in zip(self._rules, self._metadata):
            if meta.procedure is not None:
                continue
            pattern, skeleton = rule
            rule_dict = {
                "pattern": _to_json(pattern),
                "skeleton": _to_json(skeleton),
            }
            if meta.name:
                rule_dict["name"] = meta.name
            if meta.description:
                rule_dict["description"] = meta.description
            if meta.priority != 0:
                rule_dict["priority"] = meta.priority
            if meta.condition:
                rule_dict["condition"] = _to_json(meta.condition)
            if meta.tags:
                rule_dict["tags"] = meta.tags
            rules_list.append(rule_dict)

        return {"rules": rules_list}

    def to_json(self, name: Optional[str] = None, description: Optional[str] = None,
                indent: Optional[int] = 2) -> str:
        """Export pattern rules to a JSON string compatible with load_rules_from_json()."""
        result = self.to_dict()
        if name:
            result["name"] = name
        if description:
            result["description"] = description
        return json.dumps(result, indent=indent)

    def __len__(self) -> int:
        return len(self._rules)

    def __repr__(self) -> str:
        return f"RuleEngine({len(self._rules)} rules)"

    def __call__(self, expr: ExprType, **kwargs) -> ExprType:
        """Make engine callable: engine(expr) is shorthand for engine.simplify(expr)."""
        return self.simplify(expr, **kwargs)

    def __iter__(self):
        """Iterate over (rule, metadata) pairs."""
        return iter(zip(self._rules, self._metadata))

    def __contains__(self, name: str) -> bool:
        """Check if a named rule exists: 'add-zero' in engine."""
        return name in self._rule_names

    def __getitem__(self, name: str) -> Tuple[Tuple, RuleMetadata]:
        """Get rule by name: engine['add-zero']."""
        if name not in self._rule_names:
            raise KeyError(f"No rule named '{name}'")
        idx = self._rule_names[name]
        return self._rules[idx], self._metadata[idx]

    # Class method constructors for fluent creation
    @classmethod
    def from_dsl(cls, text: str) -> 'RuleEngine':
        """Create engine from DSL text."""
        return cls().load_dsl(text)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> 'RuleEngine':
        """Create engine from file."""
        return cls().load_file(path)

    # Combining engines (rule set algebra)
    def copy(self) -> 'RuleEngine':
        """Create a copy of this engine."""
        new_engine = RuleEngine()
        new_engine._rules = self._rules.copy()
        new_engine._metadata = self._metadata.copy()
        new_engine._rule_names = self._rule_names.copy()
        new_engine._disabled_groups = set(self._disabled_groups)
        return new_engine

    def __or__(self, other: 'RuleEngine') -> 'RuleEngine':
        """Union of two engines: engine1 | engine2."""
        result = self.copy()
        result |= other
        return result

    def __ior__(self, other: 'RuleEngine') -> 'RuleEngine':
        """In-place union: engine1 |= engine2."""
        return self._extend([(meta, rule) for rule, meta in other])

    def __rshift__(self, other: Union['RuleEngine', 'SequencedEngine']) -> 'SequencedEngine':
        """
        Sequence two engines: engine1 >> engine2.

        Returns a SequencedEngine that applies engine1 until fixpoint,
        then applies engine2 until fixpoint, and repeats the round until
        neither changes the expression.
        """
        return SequencedEngine([self]) >> other


class SequencedEngine:
    """
    An engine that applies multiple engines in sequence.

    Each engine (phase) is run to its fixpoint before moving to the next.
    Rounds over all phases repeat until a whole round changes nothing,
    since a later phase can expose work for an earlier one. Created via
    the >> operator on RuleEngine, or directly from a list of phases.

    A SequencedEngine is the configuration value accepted as rules= by
    simplify(), differentiate(), solve() and optimize().

    Example:
        phase1 = RuleEngine.from_dsl("...")
        phase2 = RuleEngine.from_dsl("...")
        phased = phase1 >> phase2
        result = phased(expr)
    """

    def __init__(self, engines: List['RuleEngine'], max_rounds: int = MAX_ROUNDS):
        """Initialize with a list of engines to apply in sequence."""
        self._engines = list(engines)
        self.max_rounds = max_rounds

    def rewrite(self, expr: ExprType, max_steps: int = MAX_ITERATIONS) -> ExprType:
        """
        Rewrite expr to a fixpoint of every phase.

        Raises:
            IterationLimit: a phase ran out of steps or the rounds did not settle
        """
        current = expr
        for _ in range(self.max_rounds):
            before = current
            for engine in self._engines:
                current = engine.rewrite(current, max_steps=max_steps)
            if current == before:
                return current
        raise IterationLimit(f"phases did not settle within {self.max_rounds} rounds")

    def simplify(self, expr: ExprType, trace: bool = False,
                 max_steps: int = MAX_ITERATIONS, **kwargs):
        """Apply all engines in sequence until nothing changes."""
        if trace:
            return self._simplify_with_trace(expr, max_steps)
        if kwargs.get("strategy", "exhaustive") != "exhaustive":
            result = expr
            for engine in self._engines:
                result = engine.simplify(result, max_steps=max_steps, **kwargs)
            return result
        try:
            return self.rewrite(expr, max_steps=max_steps)
        except IterationLimit as e:
            logger.warning("Rewriting stopped, returning input unchanged: %s", e)
            return expr

    def _simplify_with_trace(self, expr: ExprType, max_steps: int) -> Tuple[ExprType, RewriteTrace]:
        trace_obj = RewriteTrace()
        trace_obj.initial = expr
        current = expr
        for _ in range(self.max_rounds):
            before = current
            for engine in self._engines:
                current, phase_trace = engine.simplify(current, trace=True, max_steps=max_steps)
                trace_obj.steps.extend(phase_trace.steps)
            if current == before:
                break
        trace_obj.final = current
        return current, trace_obj

    def __call__(self, expr: ExprType, **kwargs) -> ExprType:
        return self.simplify(expr, **kwargs)

    def __rshift__(self, other: Union['RuleEngine', 'SequencedEngine']) -> 'SequencedEngine':
        """Chain another engine: (a >> b) >> c."""
        if isinstance(other, SequencedEngine):
            return SequencedEngine(self._engines + other._engines, self.max_rounds)
        return SequencedEngine(self._engines + [other], self.max_rounds)

    def __repr__(self) -> str:
        return f"SequencedEngine({len(self._engines)} phases)"

    def __len__(self) -> int:
        """Number of phases."""
        return len(self._engines)

    def __iter__(self):
        """Iterate over engines."""
        return iter(self._engines)

    def __getitem__(self, index: int) -> 'RuleEngine':
        return self._engines[index]
