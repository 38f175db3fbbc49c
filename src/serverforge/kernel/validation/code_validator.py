"""Static validation of generated handler code.

The validator never executes anything. Syntax is judged the way a
``new Function(code)`` call judges it: the source must parse as the body of a
plain (non-async) function, so module syntax and top-level ``await`` are
errors even though a module parser would accept them.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import FrozenSet, Iterator, List, Optional, Set, Tuple

import tree_sitter_javascript
from tree_sitter import Language, Node, Parser

from serverforge.domain.errors import ValidationError


_JS_LANGUAGE = Language(tree_sitter_javascript.language())

# Order matters: errors are reported in this order.
DISALLOWED_PATTERNS: Tuple[Tuple[re.Pattern, str], ...] = (
    (re.compile(r"require\s*\(\s*['\"]child_process['\"]\s*\)"), "child_process module is not allowed"),
    (re.compile(r"require\s*\(\s*['\"]fs['\"]\s*\)"), "Direct fs access is not allowed (use provided storage APIs)"),
    (re.compile(r"process\.env(?!\.)"), "Direct process.env access pattern detected"),
    (re.compile(r"eval\s*\("), "eval() is not allowed"),
    (re.compile(r"Function\s*\("), "Function constructor is not allowed"),
)

RECOMMENDED_PATTERNS: Tuple[Tuple[re.Pattern, str], ...] = (
    (re.compile(r"req\.method\s*===?\s*['\"]GET['\"]|GET", re.IGNORECASE), "Handler should check for GET requests"),
    (re.compile(r"req\.method\s*===?\s*['\"]POST['\"]|POST", re.IGNORECASE), "Handler should check for POST requests"),
    (re.compile(r"X-Image-Width|x-image-width", re.IGNORECASE), "Handler should set X-Image-Width header"),
)

_FUNCTION_NODE_TYPES = frozenset({
    "function",
    "function_declaration",
    "function_expression",
    "generator_function",
    "generator_function_declaration",
    "arrow_function",
    "method_definition",
})
_MODULE_STATEMENT_TYPES = {
    "import_statement": "Cannot use import statement outside a module",
    "export_statement": "Unexpected token 'export'",
}
_LOOP_NODE_TYPES = frozenset({"for_statement", "for_in_statement", "while_statement", "do_statement"})
# Nodes that open a block scope for let/const/class.
_SCOPE_NODE_TYPES = frozenset({"program", "statement_block", "switch_body", "class_static_block"})
_FUNCTION_DECLARATION_TYPES = frozenset({"function_declaration", "generator_function_declaration"})
# Functions whose parameter lists never tolerate duplicates.
_STRICT_PARAMETER_TYPES = frozenset({"arrow_function", "method_definition"})


@dataclass(frozen=True)
class ValidationReport:
    """Outcome of a static scan."""
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def raise_for_errors(self) -> None:
        if not self.valid:
            raise ValidationError("; ".join(self.errors), errors=self.errors)

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


def _position(node: Node) -> str:
    row, column = node.start_point[0], node.start_point[1]
    return f"line {row + 1}, column {column + 1}"


def _snippet(node: Node) -> str:
    text = (node.text or b"").decode("utf-8", errors="replace").strip()
    first_line = text.splitlines()[0] if text else ""
    return first_line[:24]


def _is_async_function(node: Node) -> bool:
    return any(child.type == "async" for child in node.children)


def _text(node: Node) -> str:
    return (node.text or b"").decode("utf-8", errors="replace")


def _has_use_strict(body: Optional[Node]) -> bool:
    """True when the directive prologue of ``body`` contains "use strict"."""
    if body is None or body.type not in ("program", "statement_block"):
        return False
    for statement in body.named_children:
        if statement.type == "comment":
            continue
        if statement.type != "expression_statement":
            return False
        expression = statement.named_children[0] if statement.named_children else None
        if expression is None or expression.type != "string":
            return False
        if _text(expression)[1:-1] == "use strict":
            return True
    return False


def _binding_names(pattern: Optional[Node]) -> Iterator[str]:
    """Identifiers bound by a declaration target or parameter."""
    if pattern is None:
        return
    if pattern.type in ("identifier", "shorthand_property_identifier_pattern"):
        yield _text(pattern)
    elif pattern.type == "pair_pattern":
        yield from _binding_names(pattern.child_by_field_name("value"))
    elif pattern.type in ("assignment_pattern", "object_assignment_pattern"):
        yield from _binding_names(pattern.child_by_field_name("left"))
    elif pattern.type in ("object_pattern", "array_pattern", "rest_pattern"):
        for child in pattern.named_children:
            yield from _binding_names(child)


def _declarator_targets(declaration: Node) -> Iterator[Node]:
    for declarator in declaration.named_children:
        if declarator.type == "variable_declarator":
            yield declarator


def _declaration_kind(node: Node) -> str:
    kind = node.child_by_field_name("kind")
    if kind is not None:
        return kind.type
    return node.children[0].type if node.children else ""


def _scope_statements(scope: Node) -> Iterator[Node]:
    if scope.type != "switch_body":
        yield from scope.named_children
        return
    for case in scope.named_children:
        value = case.child_by_field_name("value")
        for child in case.named_children:
            if value is None or child != value:
                yield child


def _lexical_bindings(scope: Node) -> Tuple[List[str], Set[str]]:
    """let/const/class names declared directly in ``scope``, plus function names."""
    lexical: List[str] = []
    functions: Set[str] = set()
    for statement in _scope_statements(scope):
        if statement.type == "lexical_declaration":
            for declarator in _declarator_targets(statement):
                lexical.extend(_binding_names(declarator.child_by_field_name("name")))
        elif statement.type == "class_declaration":
            lexical.extend(_binding_names(statement.child_by_field_name("name")))
        elif statement.type in _FUNCTION_DECLARATION_TYPES:
            functions.update(_binding_names(statement.child_by_field_name("name")))
    return lexical, functions


def _hoisted_var_names(scope: Node) -> Set[str]:
    """``var`` names declared anywhere under ``scope`` up to the next function."""
    names: Set[str] = set()
    stack = list(scope.named_children)
    while stack:
        node = stack.pop()
        if node.type in _FUNCTION_NODE_TYPES or node.type == "class_static_block":
            continue
        if node.type == "variable_declaration":
            for declarator in _declarator_targets(node):
                names.update(_binding_names(declarator.child_by_field_name("name")))
        elif node.type == "for_in_statement" and _declaration_kind(node) == "var":
            names.update(_binding_names(node.child_by_field_name("left")))
        stack.extend(node.named_children)
    return names


def _redeclared_name(scope: Node, parameters: FrozenSet[str] = frozenset()) -> Optional[str]:
    lexical, functions = _lexical_bindings(scope)
    if not lexical:
        return None
    taken = set(functions) | set(parameters) | _hoisted_var_names(scope)
    for name in lexical:
        if name in taken:
            return name
        taken.add(name)
    return None


def _parameter_names(function: Node) -> Tuple[List[str], bool]:
    """Parameter names in order, and whether the list is simple."""
    single = function.child_by_field_name("parameter")
    if single is not None:
        return list(_binding_names(single)), True
    parameters = function.child_by_field_name("parameters")
    if parameters is None:
        return [], True
    names: List[str] = []
    simple = True
    for parameter in parameters.named_children:
        if parameter.type == "comment":
            continue
        if parameter.type != "identifier":
            simple = False
        names.extend(_binding_names(parameter))
    return names, simple


@dataclass(frozen=True)
class _WalkContext:
    """Syntactic context inherited from the enclosing nodes."""
    in_async: Optional[bool] = None
    strict: bool = False
    in_loop: bool = False
    in_switch: bool = False
    labels: FrozenSet[str] = frozenset()


def _function_is_strict(function: Node, context: _WalkContext) -> bool:
    return context.strict or _has_use_strict(function.child_by_field_name("body"))


def _early_error(node: Node, context: _WalkContext) -> Optional[str]:
    """Errors a JavaScript engine raises before running any code."""
    kind = node.type
    if kind in _SCOPE_NODE_TYPES:
        name = _redeclared_name(node)
        if name:
            return f"Identifier '{name}' has already been declared"
    elif kind == "lexical_declaration" and _declaration_kind(node) == "const":
        for declarator in _declarator_targets(node):
            if declarator.child_by_field_name("value") is None:
                return "Missing initializer in const declaration"
    elif kind in ("break_statement", "continue_statement"):
        label = node.child_by_field_name("label")
        if label is not None:
            if _text(label) not in context.labels:
                return f"Undefined label '{_text(label)}'"
        elif kind == "break_statement" and not (context.in_loop or context.in_switch):
            return "Illegal break statement"
        elif kind == "continue_statement" and not context.in_loop:
            return "Illegal continue statement: no surrounding iteration statement"
    elif kind in _FUNCTION_NODE_TYPES:
        names, simple = _parameter_names(node)
        if len(set(names)) != len(names) and (
            kind in _STRICT_PARAMETER_TYPES or not simple or _function_is_strict(node, context)
        ):
            return "Duplicate parameter name not allowed in this context"
        body = node.child_by_field_name("body")
        if body is not None and body.type == "statement_block":
            name = _redeclared_name(body, frozenset(names))
            if name:
                return f"Identifier '{name}' has already been declared"
    return None


def _child_context(node: Node, context: _WalkContext) -> _WalkContext:
    kind = node.type
    if kind in _FUNCTION_NODE_TYPES:
        return _WalkContext(
            in_async=_is_async_function(node),
            strict=_function_is_strict(node, context),
        )
    if kind in ("class_declaration", "class"):
        return replace(context, strict=True)
    if kind in _LOOP_NODE_TYPES:
        return replace(context, in_loop=True)
    if kind == "switch_statement":
        return replace(context, in_switch=True)
    if kind == "labeled_statement":
        label = node.child_by_field_name("label")
        if label is not None:
            return replace(context, labels=context.labels | {_text(label)})
    return context


class CodeValidator:
    """Deterministic scanner for syntax errors and disallowed patterns."""

    def __init__(self) -> None:
        self._parser = Parser(_JS_LANGUAGE)

    def validate(self, code: str) -> ValidationReport:
        source = str(code or "")
        errors: List[str] = []

        syntax_error = self._find_syntax_error(source)
        if syntax_error:
            errors.append(f"Syntax error: {syntax_error}")

        for pattern, message in DISALLOWED_PATTERNS:
            if pattern.search(source):
                errors.append(message)

        warnings = [
            message
            for pattern, message in RECOMMENDED_PATTERNS
            if not pattern.search(source)
        ]

        return ValidationReport(valid=not errors, errors=errors, warnings=warnings)

    def _find_syntax_error(self, source: str) -> Optional[str]:
        tree = self._parser.parse(source.encode("utf-8"))
        root = tree.root_node

        for child in root.children:
            message = _MODULE_STATEMENT_TYPES.get(child.type)
            if message:
                return f"{message} ({_position(child)})"

        # Depth-first, document order. tree-sitter recovers from errors and
        # knows nothing of early errors, so both are checked here.
        stack: List[Tuple[Node, _WalkContext]] = [
            (root, _WalkContext(strict=_has_use_strict(root)))
        ]
        while stack:
            node, context = stack.pop()
            if node.is_missing:
                return f"Missing '{node.type}' ({_position(node)})"
            if node.type == "ERROR":
                snippet = _snippet(node)
                if not snippet:
                    return f"Unexpected end of input ({_position(node)})"
                return f"Unexpected token '{snippet}' ({_position(node)})"
            if node.type == "await_expression" and not context.in_async:
                return (
                    "await is only valid in async functions "
                    f"({_position(node)})"
                )
            message = None if root.has_error else _early_error(node, context)
            if message:
                return f"{message} ({_position(node)})"

            child_context = _child_context(node, context)
            for child in reversed(node.children):
                stack.append((child, child_context))
        return None


_default_validator: Optional[CodeValidator] = None


def get_code_validator() -> CodeValidator:
    global _default_validator
    if _default_validator is None:
        _default_validator = CodeValidator()
    return _default_validator


def validate_code(code: str) -> ValidationReport:
    """Validate generated handler code without executing it."""
    return get_code_validator().validate(code)
