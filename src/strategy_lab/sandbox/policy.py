"""Static security policy for user strategy scripts.

Two layers run before any code reaches the worker. The first is the
compatibility baseline: a substring deny-list and an import allow-list
matched against the raw text. The second walks the syntax tree and rejects
the same constructs when they are spelled in ways the text scan cannot see
(``import numpy, os``, aliased builtins, dunder attribute walks).
"""

from __future__ import annotations

import ast
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional


FORBIDDEN_PATTERNS: tuple[str, ...] = (
    "import os",
    "import sys",
    "import subprocess",
    "import shutil",
    "import pathlib",
    "__import__",
    "eval(",
    "exec(",
    "compile(",
    "globals(",
    "locals(",
    "vars(",
    "dir(",
    "getattr(",
    "setattr(",
    "delattr(",
    "hasattr(",
    "open(",
    "file(",
    "import socket",
    "import urllib",
    "import requests",
    "import http",
    "import ftplib",
    "import smtplib",
    "import multiprocessing",
    "import threading",
    "import signal",
    "__builtins__",
    "__loader__",
    "__spec__",
)

ALLOWED_IMPORTS: tuple[str, ...] = (
    "numpy",
    "pandas",
    "math",
    "statistics",
    "decimal",
    "datetime",
    "json",
    "re",
    "collections",
    "itertools",
    "functools",
    "typing",
    "dataclasses",
    "enum",
    "copy",
    "operator",
    "random",
)

IMPORT_PATTERN = re.compile(r"import\s+(\w+)|from\s+(\w+)\s+import")

FORBIDDEN_CALLS = frozenset(
    {
        "__import__",
        "eval",
        "exec",
        "compile",
        "globals",
        "locals",
        "vars",
        "dir",
        "getattr",
        "setattr",
        "delattr",
        "hasattr",
        "open",
        "file",
        "input",
        "breakpoint",
        "memoryview",
    }
)

FORBIDDEN_ATTRIBUTES = frozenset(
    {
        "__bases__",
        "__builtins__",
        "__class__",
        "__closure__",
        "__code__",
        "__dict__",
        "__getattribute__",
        "__globals__",
        "__loader__",
        "__mro__",
        "__reduce__",
        "__reduce_ex__",
        "__spec__",
        "__subclasses__",
        "f_back",
        "f_globals",
        "f_locals",
        "gi_frame",
        "tb_frame",
    }
)

# numpy and pandas entry points that reach files, native code or the network
IO_ATTRIBUTES = frozenset(
    {
        "DataSource",
        "ExcelWriter",
        "HDFStore",
        "attrgetter",
        "ctypes",
        "ctypeslib",
        "dump",
        "f2py",
        "fromfile",
        "fromregex",
        "genfromtxt",
        "io",
        "lib",
        "load",
        "loadtxt",
        "memmap",
        "methodcaller",
        "npyio",
        "save",
        "savetxt",
        "savez",
        "savez_compressed",
        "testing",
        "to_clipboard",
        "to_csv",
        "to_excel",
        "to_feather",
        "to_gbq",
        "to_hdf",
        "to_html",
        "to_json",
        "to_latex",
        "to_markdown",
        "to_orc",
        "to_parquet",
        "to_pickle",
        "to_sql",
        "to_stata",
        "to_xml",
        "tofile",
    }
)
IO_PREFIXES = ("read_",)

STRATEGY_CLASS = "Strategy"
BAR_CALLBACK = "on_bar"


def is_io_name(name: str) -> bool:
    return name in IO_ATTRIBUTES or name.startswith(IO_PREFIXES)


@dataclass(frozen=True)
class SandboxPolicy:
    timeout_ms: int = 30000
    memory_limit_mb: int = 256
    max_iterations: int = 1_000_000
    max_output_bytes: int = 1_048_576
    allowed_imports: tuple[str, ...] = ALLOWED_IMPORTS

    def to_dict(self) -> dict:
        return {
            "timeout_ms": self.timeout_ms,
            "memory_limit_mb": self.memory_limit_mb,
            "max_iterations": self.max_iterations,
            "max_output_bytes": self.max_output_bytes,
            "allowed_imports": list(self.allowed_imports),
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "SandboxPolicy":
        if not data:
            return cls()
        return cls(
            timeout_ms=int(data.get("timeout_ms", 30000)),
            memory_limit_mb=int(data.get("memory_limit_mb", 256)),
            max_iterations=int(data.get("max_iterations", 1_000_000)),
            max_output_bytes=int(data.get("max_output_bytes", 1_048_576)),
            allowed_imports=tuple(data.get("allowed_imports", ALLOWED_IMPORTS)),
        )


class ErrorType(str, Enum):
    SYNTAX = "syntax"
    SECURITY = "security"
    INTERFACE = "interface"
    RUNTIME = "runtime"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class ValidationIssue:
    type: ErrorType
    message: str
    line: Optional[int] = None
    column: Optional[int] = None
    suggestion: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "message": self.message,
            "line": self.line,
            "column": self.column,
            "suggestion": self.suggestion,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ValidationIssue":
        return cls(
            type=ErrorType(data["type"]),
            message=data["message"],
            line=data.get("line"),
            column=data.get("column"),
            suggestion=data.get("suggestion"),
        )


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    syntax_check_passed: bool = True
    security_check_passed: bool = True
    interface_check_passed: bool = True

    def first_error(self) -> Optional[ValidationIssue]:
        return self.errors[0] if self.errors else None

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "errors": [issue.to_dict() for issue in self.errors],
            "warnings": list(self.warnings),
            "syntax_check_passed": self.syntax_check_passed,
            "security_check_passed": self.security_check_passed,
            "interface_check_passed": self.interface_check_passed,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ValidationResult":
        return cls(
            is_valid=bool(data["is_valid"]),
            errors=[ValidationIssue.from_dict(item) for item in data.get("errors", [])],
            warnings=list(data.get("warnings", [])),
            syntax_check_passed=bool(data.get("syntax_check_passed", True)),
            security_check_passed=bool(data.get("security_check_passed", True)),
            interface_check_passed=bool(data.get("interface_check_passed", True)),
        )


def categorize_error(message: str) -> ErrorType:
    if "Security violation" in message or "not allowed" in message:
        return ErrorType.SECURITY
    lowered = message.lower()
    if "syntax" in lowered:
        return ErrorType.SYNTAX
    if "interface" in lowered or BAR_CALLBACK in message or STRATEGY_CLASS in message:
        return ErrorType.INTERFACE
    if "timeout" in lowered or "timed out" in lowered:
        return ErrorType.TIMEOUT
    return ErrorType.RUNTIME


def _line_of(code: str, index: int) -> int:
    return code.count("\n", 0, index) + 1


def _import_message(module: str, allowed: Iterable[str]) -> str:
    return f'Import not allowed: "{module}". Allowed imports: {", ".join(allowed)}'


def check_patterns(code: str, allowed_imports: Iterable[str] = ALLOWED_IMPORTS) -> list[ValidationIssue]:
    """Text-level deny-list and allow-list checks."""
    allowed = tuple(allowed_imports)
    issues: list[ValidationIssue] = []
    for pattern in FORBIDDEN_PATTERNS:
        index = code.find(pattern)
        if index >= 0:
            issues.append(
                ValidationIssue(
                    ErrorType.SECURITY,
                    f'Security violation: "{pattern}" is not allowed',
                    line=_line_of(code, index),
                    suggestion="Remove file, process, network and reflection access from the strategy",
                )
            )

    seen: set[str] = set()
    for match in IMPORT_PATTERN.finditer(code):
        module = match.group(1) or match.group(2)
        if module in allowed or module in seen:
            continue
        seen.add(module)
        issues.append(
            ValidationIssue(
                ErrorType.SECURITY,
                _import_message(module, allowed),
                line=_line_of(code, match.start()),
                suggestion=f"Use one of: {', '.join(allowed)}",
            )
        )
    return issues


class _PolicyVisitor(ast.NodeVisitor):
    def __init__(self, allowed_imports: tuple[str, ...]) -> None:
        self.allowed = allowed_imports
        self.issues: list[ValidationIssue] = []

    def _add(self, node: ast.AST, message: str, suggestion: Optional[str] = None) -> None:
        self.issues.append(
            ValidationIssue(
                ErrorType.SECURITY,
                message,
                line=getattr(node, "lineno", None),
                column=getattr(node, "col_offset", None),
                suggestion=suggestion,
            )
        )

    def _check_module(self, node: ast.AST, module: str) -> None:
        root, *parts = module.split(".")
        if root not in self.allowed:
            self._add(node, _import_message(root, self.allowed))
        for part in parts:
            if is_io_name(part):
                self._add(node, f'Security violation: "{module}" is not allowed')

    def visit_Import(self, node: ast.Import) -> None:
        for alias in node.names:
            self._check_module(node, alias.name)
        self.generic_visit(node)

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        if node.level:
            self._add(node, "Security violation: relative imports are not allowed")
        elif node.module:
            self._check_module(node, node.module)
        for alias in node.names:
            if alias.name == "*":
                self._add(node, "Security violation: star imports are not allowed")
            elif is_io_name(alias.name):
                self._add(node, f'Security violation: "{alias.name}" is not allowed')
        self.generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        if isinstance(node.ctx, ast.Load) and node.id in FORBIDDEN_CALLS:
            self._add(node, f'Security violation: "{node.id}" is not allowed')
        self.generic_visit(node)

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if node.attr in FORBIDDEN_ATTRIBUTES or is_io_name(node.attr):
            self._add(node, f'Security violation: "{node.attr}" is not allowed')
        self.generic_visit(node)


def check_syntax_tree(tree: ast.AST, allowed_imports: Iterable[str] = ALLOWED_IMPORTS) -> list[ValidationIssue]:
    visitor = _PolicyVisitor(tuple(allowed_imports))
    visitor.visit(tree)
    return visitor.issues


def _find_strategy(tree: ast.Module) -> Optional[ast.ClassDef]:
    for node in tree.body:
        if isinstance(node, ast.ClassDef) and node.name == STRATEGY_CLASS:
            return node
    return None


def check_interface(tree: ast.Module) -> tuple[list[ValidationIssue], list[str]]:
    warnings: list[str] = []
    strategy = _find_strategy(tree)
    if strategy is None:
        return [
            ValidationIssue(
                ErrorType.INTERFACE,
                f"Missing required class '{STRATEGY_CLASS}'",
                suggestion=f"Define 'class {STRATEGY_CLASS}:' with an '{BAR_CALLBACK}' method",
            )
        ], warnings

    methods = {
        node.name: node
        for node in strategy.body
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef))
    }
    callback = methods.get(BAR_CALLBACK)
    if callback is None:
        return [
            ValidationIssue(
                ErrorType.INTERFACE,
                f"{STRATEGY_CLASS} class must define '{BAR_CALLBACK}(self, bar, position, orders)'",
                line=strategy.lineno,
                suggestion=f"Add 'def {BAR_CALLBACK}(self, bar, position, orders):' returning a list of signals",
            )
        ], warnings

    if isinstance(callback, ast.AsyncFunctionDef):
        return [
            ValidationIssue(
                ErrorType.INTERFACE,
                f"'{BAR_CALLBACK}' must be a regular method, not a coroutine",
                line=callback.lineno,
            )
        ], warnings

    if len(callback.args.args) < 4:
        warnings.append(f"'{BAR_CALLBACK}' should accept (self, bar, position, orders)")
    if not any(isinstance(node, ast.Return) and node.value is not None for node in ast.walk(callback)):
        warnings.append(f"'{BAR_CALLBACK}' never returns a value; no signals will be produced")
    if "__init__" not in methods:
        warnings.append(f"{STRATEGY_CLASS} has no __init__(self, context); parameters will be unavailable")
    return [], warnings


def validate_code(code: str, allowed_imports: Iterable[str] = ALLOWED_IMPORTS) -> ValidationResult:
    allowed = tuple(allowed_imports)
    if not code or not code.strip():
        return ValidationResult(
            is_valid=False,
            errors=[ValidationIssue(ErrorType.SYNTAX, "Strategy code is empty")],
            syntax_check_passed=False,
            interface_check_passed=False,
        )

    try:
        tree = ast.parse(code)
    except SyntaxError as exc:
        return ValidationResult(
            is_valid=False,
            errors=[
                ValidationIssue(
                    ErrorType.SYNTAX,
                    f"SyntaxError: {exc.msg}",
                    line=exc.lineno,
                    column=exc.offset,
                )
            ],
            syntax_check_passed=False,
            security_check_passed=not check_patterns(code, allowed),
            interface_check_passed=False,
        )

    security = check_patterns(code, allowed)
    known = {issue.message for issue in security}
    for issue in check_syntax_tree(tree, allowed):
        if issue.message not in known:
            known.add(issue.message)
            security.append(issue)

    interface, warnings = check_interface(tree)
    errors = security + interface
    return ValidationResult(
        is_valid=not errors,
        errors=errors,
        warnings=warnings,
        syntax_check_passed=True,
        security_check_passed=not security,
        interface_check_passed=not interface,
    )
