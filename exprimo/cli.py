#!/usr/bin/env python3
"""
exprimo Command-Line Interface

Provides interactive REPL, script execution, and pipe/filter modes.

Usage:
    exprimo                                 # Start REPL
    exprimo script.exprimo                  # Run script
    exprimo -e "x + x"                      # Simplify an expression
    exprimo -e ":solve x 2 = 4*x"           # Run one command
    exprimo -r extra.rules                  # REPL with extra rules
    echo "(* x 1)" | exprimo                # Filter mode

Expressions are written in infix ("x**2 + 2*x") or as s-expressions
("(+ (** x 2) (* 2 x))"). A plain expression line is simplified.

REPL Commands:
    :help                   Show help
    :simplify EXPR          Simplify
    :expand EXPR            Simplify, multiplying products out
    :diff VARS EXPR         Differentiate (VARS comma separated: x,x)
    :solve VARS EQ[; EQ]    Solve an equation, or a system for several VARS
    :poly VAR EXPR          Show polynomial coefficients
    :optimize EXPR          Optimize (constant folding, CSE, matrix chains)
    :eval N=V ... EXPR      Evaluate numerically
    :load FILE              Load extra rules from file
    :rules                  List extra rules
    :clear                  Clear extra rules
    :trace on|off           Toggle tracing
    :groups                 Show rule groups
    :enable GROUP           Enable group
    :disable GROUP          Disable group
    :quit                   Exit
"""

import argparse
import logging
import re
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from . import __version__
from .differentiate import differentiate
from .engine import RuleEngine, SequencedEngine, format_sexpr, parse_sexpr
from .errors import ExprimoError
from .expression import ExprType, evaluate, sort_key
from .optimize import optimize
from .parse import parse_expression, parse_rational
from .polynomial import to_polynomial
from .properties import as_operator
from .rules import DEFAULT_RULES
from .simplify import expand, simplify
from .solve import solve, solve_system

# Try to import readline for better REPL experience
try:
    import readline
    HAS_READLINE = True
except ImportError:
    HAS_READLINE = False

logger = logging.getLogger(__name__)

_BINDING_RE = re.compile(r'^([A-Za-z_][A-Za-z_0-9]*)=(\S+)$')


def read_expression(text: str) -> ExprType:
    """
    Read an expression in either notation.

    Text whose first token after an opening parenthesis is an operator is an
    s-expression; everything else is infix.
    """
    text = text.strip()
    if text.startswith("("):
        head = text[1:].split(None, 1)
        if head and as_operator(head[0]) is not None:
            return parse_sexpr(text)
    return parse_expression(text)


def format_result(value: Any) -> str:
    """Format an expression, a solution set or a set of Bindings."""
    if isinstance(value, (set, frozenset)):
        if not value:
            return "{}"
        items = list(value)
        if all(hasattr(item, "items") for item in items):
            lines = []
            for item in sorted(items, key=lambda b: [sort_key(v) for _, v in sorted(b.items())]):
                pairs = ", ".join(f"{k} = {format_sexpr(v)}" for k, v in sorted(item.items()))
                lines.append("{" + pairs + "}")
            return "\n".join(lines)
        return "{" + ", ".join(format_sexpr(v) for v in sorted(items, key=sort_key)) + "}"
    return format_sexpr(value)


class ExprimoCompleter:
    """Tab completer for the exprimo REPL."""

    # Commands that can be completed
    COMMANDS = [
        ":help", ":quit", ":exit", ":q",
        ":simplify", ":expand", ":diff", ":solve", ":poly", ":optimize", ":eval",
        ":load", ":rules", ":clear", ":trace",
        ":groups", ":enable", ":disable",
    ]

    TRACE_OPTIONS = ["on", "off"]

    def __init__(self, repl: 'ExprimoREPL'):
        self.repl = repl
        self.matches: List[str] = []

    def complete(self, text: str, state: int) -> Optional[str]:
        """Return the next possible completion for 'text'."""
        if state == 0:
            line = readline.get_line_buffer() if HAS_READLINE else ""
            self.matches = self._get_matches(text, line)

        try:
            return self.matches[state]
        except IndexError:
            return None

    def _get_matches(self, text: str, line: str) -> List[str]:
        line = line.lstrip()

        if line.startswith(":trace "):
            return [t for t in self.TRACE_OPTIONS if t.startswith(text)]

        if line.startswith(":enable ") or line.startswith(":disable "):
            groups = self.repl.groups()
            return sorted(g for g in groups if g.startswith(text))

        if line.startswith(":load "):
            return self._complete_path(text)

        if text.startswith(":") or (line.startswith(":") and " " not in line):
            return [c for c in self.COMMANDS if c.startswith(text)]

        return []

    def _complete_path(self, text: str) -> List[str]:
        """Complete file paths."""
        import glob

        if not text:
            text = "./"

        matches = []
        for path in glob.glob(text + "*"):
            if Path(path).is_dir():
                matches.append(path + "/")
            else:
                matches.append(path)
        return matches


def count_parens(text: str) -> int:
    """Count unbalanced parentheses. Returns >0 if more open than close."""
    depth = 0
    in_string = False
    escape = False

    for c in text:
        if escape:
            escape = False
            continue
        if c == '\\':
            escape = True
            continue
        if c == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if c == '(':
            depth += 1
        elif c == ')':
            depth -= 1

    return depth


class ExprimoREPL:
    """Interactive REPL for exprimo."""

    def __init__(self, use_readline: bool = True):
        self.phases = SequencedEngine([phase.copy() for phase in DEFAULT_RULES])
        self.engine = RuleEngine()  # extra rules, run after the built-in phases
        self.trace = False
        self.running = True
        self.multi_line_buffer = ""

        self.readline = use_readline and HAS_READLINE
        if self.readline:
            self.history_file = Path.home() / ".exprimo_history"
            try:
                readline.read_history_file(self.history_file)
            except (FileNotFoundError, OSError):
                pass
            readline.set_history_length(1000)

            self.completer = ExprimoCompleter(self)
            readline.set_completer(self.completer.complete)
            readline.parse_and_bind("tab: complete")
            readline.set_completer_delims(" \t\n")

    def save_history(self):
        """Save readline history."""
        if self.readline:
            try:
                readline.write_history_file(self.history_file)
            except OSError as e:
                logger.debug("Could not save history: %s", e)

    @property
    def rules(self):
        """Rule configuration: the built-in phases, then any extra rules."""
        if len(self.engine):
            return self.phases >> self.engine
        return self.phases

    def groups(self) -> set:
        result = set(self.engine.groups())
        for phase in self.phases:
            result |= phase.groups()
        return result

    def _set_group(self, group: str, enabled: bool) -> None:
        for engine in [self.engine] + list(self.phases):
            if group in engine.groups():
                if enabled:
                    engine.enable_group(group)
                else:
                    engine.disable_group(group)

    # ============================================================
    # Commands
    # ============================================================

    def cmd_simplify(self, arg: str) -> str:
        expr = read_expression(arg)
        if self.trace:
            result, trace = self.rules.simplify(expr, trace=True)
            if trace.steps:
                return f"{format_sexpr(result)}\n{trace.format('rules')}"
            return format_sexpr(result)
        return format_sexpr(simplify(expr, rules=self.rules))

    def cmd_expand(self, arg: str) -> str:
        return format_sexpr(expand(read_expression(arg)))

    def cmd_diff(self, arg: str) -> str:
        variables, text = _split_first(arg, "Usage: :diff VARS EXPR")
        result = differentiate(variables.split(","), read_expression(text), rules=self.rules)
        return format_sexpr(result)

    def cmd_solve(self, arg: str) -> str:
        variables, text = _split_first(arg, "Usage: :solve VARS EQ[; EQ ...]")
        names = variables.split(",")
        equations = [read_expression(part) for part in text.split(";") if part.strip()]
        if len(names) == 1 and len(equations) == 1:
            return format_result(solve(names[0], equations[0], rules=self.rules))
        return format_result(solve_system(names, equations, rules=self.rules))

    def cmd_poly(self, arg: str) -> str:
        var, text = _split_first(arg, "Usage: :poly VAR EXPR")
        poly = to_polynomial(var, read_expression(text))
        return "\n".join(f"{var}**{e}: {format_sexpr(c)}" for e, c in poly.terms)

    def cmd_optimize(self, arg: str) -> str:
        return format_sexpr(optimize(read_expression(arg), rules=self.rules))

    def cmd_eval(self, arg: str) -> str:
        bindings, text = _split_bindings(arg)
        if not text:
            return "Usage: :eval NAME=VALUE ... EXPR"
        return format_sexpr(evaluate(read_expression(text), bindings))

    def handle_command(self, line: str) -> Optional[str]:
        """
        Handle a REPL command (starts with :).

        Returns a message to print, or None.
        """
        parts = line[1:].split(None, 1)
        if not parts:
            return "Unknown command. Type :help for help."

        cmd = parts[0].lower()
        arg = parts[1] if len(parts) > 1 else ""

        if cmd == "help":
            return self.help_text()

        elif cmd in ("quit", "exit", "q"):
            self.running = False
            return None

        elif cmd in ("simplify", "expand", "diff", "solve", "poly", "optimize", "eval"):
            if not arg:
                return f"Usage: :{cmd} ..."
            try:
                return getattr(self, f"cmd_{cmd}")(arg)
            except (ExprimoError, ValueError, TypeError) as e:
                return f"Error: {e}"

        elif cmd == "load":
            if not arg:
                return "Usage: :load FILENAME"
            try:
                self.engine.load_file(Path(arg))
                return f"Loaded {len(self.engine)} rules from {arg}"
            except (OSError, ValueError) as e:
                return f"Error loading {arg}: {e}"

        elif cmd == "rules":
            rules = self.engine.list_rules()
            if not rules:
                return "No extra rules loaded"
            return "\n".join(rules)

        elif cmd == "clear":
            self.engine.clear()
            return "Cleared extra rules"

        elif cmd == "trace":
            if arg.lower() in ("on", "true", "1"):
                self.trace = True
            elif arg.lower() in ("off", "false", "0"):
                self.trace = False
            else:
                self.trace = not self.trace
            return f"Tracing {'enabled' if self.trace else 'disabled'}"

        elif cmd == "groups":
            groups = self.groups()
            if not groups:
                return "No groups defined"
            return "Groups: " + ", ".join(sorted(groups))

        elif cmd in ("enable", "disable"):
            if not arg:
                return f"Usage: :{cmd} GROUP"
            self._set_group(arg, cmd == "enable")
            return f"{cmd.capitalize()}d group: {arg}"

        else:
            return f"Unknown command: {cmd}. Type :help for help."

    def help_text(self) -> str:
        """Return help text."""
        return """exprimo REPL Commands:
  :help                   Show this help
  :simplify EXPR          Simplify (also the action for a plain expression)
  :expand EXPR            Simplify, multiplying products out
  :diff VARS EXPR         Differentiate; VARS is comma separated (x,x)
  :solve VARS EQ[; EQ]    Solve an equation, or a system for several VARS
  :poly VAR EXPR          Show polynomial coefficients in VAR
  :optimize EXPR          Constant folding, CSE and matrix-chain ordering
  :eval N=V ... EXPR      Evaluate with N bound to V (1/2 stays exact)
  :load FILE              Load extra rules from file (.rules or .json)
  :rules                  List extra rules
  :clear                  Clear extra rules
  :trace on|off           Toggle tracing
  :groups                 Show all groups
  :enable GROUP           Enable a group
  :disable GROUP          Disable a group
  :quit                   Exit

Syntax:
  x**2 + 2*x - 1                           Infix expression
  (+ (** x 2) (* 2 x) -1)                  S-expression
  2*x = 4                                  Equation (for :solve)
  @name: (pattern) => (skeleton)           Define an extra rule
"""

    def process_line(self, line: str) -> Optional[str]:
        """
        Process a single line of input.

        Returns the result to print, or None.
        """
        line = line.strip()

        if not line or line.startswith("#"):
            return None

        if line.startswith(":"):
            return self.handle_command(line)

        # Rule definition (has =>)
        if "=>" in line:
            try:
                before = len(self.engine)
                self.engine.load_dsl(line)
                added = len(self.engine) - before
            except ValueError as e:
                return f"Error: {e}"
            if not added:
                return "Failed to parse rule"
            return f"Added {added} rule(s)"

        try:
            return self.cmd_simplify(line)
        except (ExprimoError, ValueError, TypeError) as e:
            return f"Error: {e}"

    def run(self):
        """Run the REPL loop."""
        print(f"exprimo {__version__} - symbolic algebra")
        print("Type :help for help, :quit to exit")
        print()

        while self.running:
            try:
                prompt = "...... " if self.multi_line_buffer else "exprimo> "
                line = input(prompt)

                if self.multi_line_buffer:
                    self.multi_line_buffer += "\n" + line
                else:
                    self.multi_line_buffer = line

                paren_count = count_parens(self.multi_line_buffer)
                if paren_count > 0:
                    continue
                elif paren_count < 0:
                    print("Error: Unbalanced parentheses (too many closing)")
                    self.multi_line_buffer = ""
                    continue

                complete_input = self.multi_line_buffer
                self.multi_line_buffer = ""

                result = self.process_line(complete_input)
                if result:
                    print(result)

            except EOFError:
                print()
                break
            except KeyboardInterrupt:
                if self.multi_line_buffer:
                    print("\nInput cancelled")
                    self.multi_line_buffer = ""
                else:
                    print()
                continue

        self.save_history()


def _split_first(arg: str, usage: str) -> Tuple[str, str]:
    parts = arg.split(None, 1)
    if len(parts) != 2:
        raise ValueError(usage)
    return parts[0], parts[1]


def _split_bindings(arg: str) -> Tuple[Dict[str, Any], str]:
    """Split leading NAME=VALUE tokens from the expression text."""
    bindings: Dict[str, Any] = {}
    tokens = arg.split()
    while tokens:
        m = _BINDING_RE.match(tokens[0])
        if m is None:
            break
        name, text = m.groups()
        value = parse_rational(text)
        bindings[name] = value if value is not None else float(text)
        tokens.pop(0)
    return bindings, " ".join(tokens)


class ScriptRunner:
    """Runs exprimo scripts, one-shot expressions and stdin filters."""

    def __init__(self, repl: Optional[ExprimoREPL] = None):
        self.repl = repl or ExprimoREPL(use_readline=False)

    def _run_lines(self, lines, source: str) -> int:
        status = 0
        for lineno, line in enumerate(lines, 1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            result = self.repl.process_line(line)
            if result is None:
                if not self.repl.running:
                    break
                continue
            if result.startswith("Error") or result.startswith("Unknown"):
                print(f"{source}:{lineno}: {result}", file=sys.stderr)
                status = 1
            else:
                print(result)
        return status

    def run_script(self, path: Path) -> int:
        """
        Run a script file.

        Returns:
            Exit code (0 for success)
        """
        try:
            lines = path.read_text().splitlines()
        except OSError as e:
            print(f"Error reading {path}: {e}", file=sys.stderr)
            return 1
        return self._run_lines(lines, str(path))

    def run_expression(self, expr_str: str) -> int:
        """
        Evaluate a single expression or command.

        Returns:
            Exit code (0 for success)
        """
        return self._run_lines([expr_str], "<expr>")

    def run_stdin(self) -> int:
        """
        Read expressions from stdin and process them.

        Returns:
            Exit code (0 for success)
        """
        return self._run_lines(sys.stdin, "<stdin>")


def main(argv: Optional[List[str]] = None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="exprimo",
        description="exprimo - symbolic simplification, solving and compilation",
        epilog="Examples:\n"
               "  exprimo                              Start REPL\n"
               "  exprimo script.exprimo               Run script\n"
               "  exprimo -e 'x + x'                   Simplify an expression\n"
               "  exprimo -e ':diff x x**3'            Run one command\n"
               "  echo '(* x 1)' | exprimo             Filter mode\n",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument(
        "script",
        nargs="?",
        help="Script file to run (.exprimo)"
    )

    parser.add_argument(
        "-r", "--rules",
        action="append",
        default=[],
        help="Load extra rules from file (can be specified multiple times)"
    )

    parser.add_argument(
        "-e", "--expr",
        help="Process a single expression or command"
    )

    parser.add_argument(
        "-t", "--trace",
        action="store_true",
        help="Enable tracing"
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Log solver and compiler decisions (-vv for debug)"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )

    args = parser.parse_args(argv)

    level = logging.WARNING
    if args.verbose == 1:
        level = logging.INFO
    elif args.verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    interactive = not (args.script or args.expr) and sys.stdin.isatty()
    repl = ExprimoREPL(use_readline=interactive)
    repl.trace = args.trace
    runner = ScriptRunner(repl)

    for rules_file in args.rules:
        try:
            repl.engine.load_file(Path(rules_file))
            logger.info("Loaded rules from %s", rules_file)
        except (OSError, ValueError) as e:
            print(f"Error loading {rules_file}: {e}", file=sys.stderr)
            sys.exit(1)

    if args.script:
        sys.exit(runner.run_script(Path(args.script)))

    elif args.expr:
        sys.exit(runner.run_expression(args.expr))

    elif not sys.stdin.isatty():
        sys.exit(runner.run_stdin())

    else:
        repl.run()


if __name__ == "__main__":
    main()
