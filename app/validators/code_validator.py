"""
app/validators/code_validator.py

Static safety gate for candidate scraper programs.

Nothing here executes the candidate: the source is parsed with ``ast``
and inspected. Every program, generated or hand-edited, passes through
this gate before it can reach the sandbox.
"""

from __future__ import annotations

import ast
import importlib
import re
from dataclasses import dataclass, field
from functools import lru_cache
from types import ModuleType
from typing import Any, Callable

EVENT_SCRAPER = "event-scraper"
VENUE_INFO = "venue-info"

DEFAULT_MAX_CODE_BYTES = 500_000


@dataclass(frozen=True)
class EntryPoint:
    name: str
    params: tuple[str, ...]

    @property
    def signature(self) -> str:
        return f"{self.name}({', '.join(self.params)})"


ENTRY_POINTS: dict[str, EntryPoint] = {
    EVENT_SCRAPER: EntryPoint(name="scrape_events", params=("page", "timezone")),
    VENUE_INFO: EntryPoint(name="scrape_venue_info", params=("page",)),
}

# Modules a candidate may import; the sandbox importer enforces the same list.
ALLOWED_IMPORTS = frozenset(
    {
        "__future__",
        "bs4",
        "calendar",
        "collections",
        "dataclasses",
        "datetime",
        "decimal",
        "functools",
        "html",
        "itertools",
        "json",
        "math",
        "re",
        "string",
        "typing",
        "unicodedata",
        "urllib.parse",
        "zoneinfo",
    }
)

# Capability the module would grant; used for specific rejection reasons.
DENIED_MODULES: dict[str, str] = {
    "os": "file-system and process access",
    "sys": "interpreter access",
    "subprocess": "process execution",
    "shutil": "file-system access",
    "pathlib": "file-system access",
    "io": "file-system access",
    "tempfile": "file-system access",
    "glob": "file-system access",
    "socket": "network access",
    "ssl": "network access",
    "http": "network access",
    "urllib": "network access",
    "requests": "network access",
    "httpx": "network access",
    "aiohttp": "network access",
    "playwright": "direct browser control",
    "selenium": "direct browser control",
    "multiprocessing": "process execution",
    "threading": "thread creation",
    "asyncio": "event loop access",
    "ctypes": "native code execution",
    "importlib": "dynamic imports",
    "builtins": "builtin replacement",
    "pickle": "arbitrary object deserialization",
    "marshal": "arbitrary object deserialization",
    "inspect": "interpreter introspection",
    "gc": "interpreter introspection",
    "signal": "process signalling",
    "sqlalchemy": "database access",
    "psycopg": "database access",
    "sqlite3": "database access",
    "db": "database access",
    "app": "host application access",
}

DENIED_NAMES: dict[str, str] = {
    "eval": "dynamic code evaluation",
    "exec": "dynamic code evaluation",
    "compile": "dynamic code evaluation",
    "__import__": "dynamic imports",
    "open": "file-system access",
    "input": "interactive input",
    "breakpoint": "debugger access",
    "globals": "namespace access",
    "locals": "namespace access",
    "vars": "namespace access",
    "getattr": "reflective attribute access",
    "setattr": "reflective attribute access",
    "delattr": "reflective attribute access",
    "memoryview": "raw memory access",
    "exit": "process termination",
    "quit": "process termination",
    "help": "interactive help",
    "__builtins__": "builtin access",
}

# Attribute names that lead from an allowed object back to process or
# interpreter access.
ESCAPE_ATTRIBUTES: frozenset[str] = (frozenset(DENIED_MODULES) - {"app", "db"}) | {
    "modules",
    "system",
    "environ",
    "getenv",
    "putenv",
    "popen",
    "fork",
    "forkpty",
    "kill",
    "killpg",
    "startfile",
    "import_module",
    "load_module",
    "exec_module",
    "f_globals",
    "f_locals",
    "f_builtins",
    "f_back",
    "gi_frame",
    "cr_frame",
    "ag_frame",
    "tb_frame",
}

_PROCESS_ATTRIBUTE = re.compile(r"^(exec|spawn)[lv]p?e?$")


@dataclass(frozen=True)
class CodeValidationResult:
    """
    Outcome of validating one candidate program.
    """

    accepted: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "accepted": self.accepted,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


class CodeValidationError(ValueError):
    """
    Raised when a caller requires a program to pass validation and it does not.
    """

    def __init__(self, result: CodeValidationResult) -> None:
        super().__init__("Code validation failed: " + "; ".join(result.errors))
        self.result = result

    def to_dict(self) -> dict[str, Any]:
        return {"message": str(self), **self.result.to_dict()}


def _format_syntax_error(exc: SyntaxError) -> str:
    message = exc.msg or "invalid syntax"
    if exc.lineno is not None:
        return f"Syntax error: {message} (line {exc.lineno}, column {exc.offset or 0})"
    return f"Syntax error: {message}"


def _module_root(name: str) -> str:
    return name.split(".", 1)[0]


def is_allowed_module(name: str) -> bool:
    """
    True when a candidate may hold a reference to module ``name``.
    """

    return name in ALLOWED_IMPORTS or _module_root(name) in ALLOWED_IMPORTS - {"urllib.parse"}


@lru_cache(maxsize=None)
def _load_module(name: str) -> ModuleType | None:
    try:
        return importlib.import_module(name)
    except ImportError:
        return None


def _module_bindings(tree: ast.Module) -> dict[str, ModuleType]:
    """
    Map each name the candidate binds to an allowlisted module object.
    """

    bindings: dict[str, ModuleType] = {}
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                if not is_allowed_module(alias.name):
                    continue
                target = alias.name if alias.asname else _module_root(alias.name)
                module = _load_module(target)
                if module is not None:
                    bindings[alias.asname or target] = module
        elif isinstance(node, ast.ImportFrom) and not node.level and node.module:
            if not (is_allowed_module(node.module) or node.module == "urllib"):
                continue
            parent = _load_module(node.module)
            if parent is None:
                continue
            for alias in node.names:
                value = getattr(parent, alias.name, None)
                if value is None and is_allowed_module(f"{node.module}.{alias.name}"):
                    value = _load_module(f"{node.module}.{alias.name}")
                if isinstance(value, ModuleType):
                    bindings[alias.asname or alias.name] = value
    return bindings


class CodeValidator:
    """
    Accepts or rejects a candidate program without running it.
    """

    def __init__(self, *, max_code_bytes: int = DEFAULT_MAX_CODE_BYTES) -> None:
        self._max_code_bytes = max_code_bytes

    def validate(self, code: str, kind: str = EVENT_SCRAPER) -> CodeValidationResult:
        entry = ENTRY_POINTS.get(kind)
        if entry is None:
            return CodeValidationResult(accepted=False, errors=[f"Unknown scraper kind: {kind!r}"])

        if not code or not code.strip():
            return CodeValidationResult(accepted=False, errors=["Code is empty"])

        size = len(code.encode("utf-8"))
        if size > self._max_code_bytes:
            return CodeValidationResult(
                accepted=False,
                errors=[f"Code exceeds size limit ({size} bytes > {self._max_code_bytes} bytes)"],
            )

        try:
            tree = ast.parse(code, filename="<candidate>")
        except SyntaxError as exc:
            return CodeValidationResult(accepted=False, errors=[_format_syntax_error(exc)])

        errors: list[str] = []
        warnings: list[str] = []
        self._check_entry_point(tree, entry, errors)
        self._check_capabilities(tree, errors, warnings)

        return CodeValidationResult(accepted=not errors, errors=errors, warnings=warnings)

    def require_valid(self, code: str, kind: str = EVENT_SCRAPER) -> CodeValidationResult:
        result = self.validate(code, kind)
        if not result.accepted:
            raise CodeValidationError(result)
        return result

    # ------------------------------------------------------------------
    # Entry point contract
    # ------------------------------------------------------------------

    def _check_entry_point(self, tree: ast.Module, entry: EntryPoint, errors: list[str]) -> None:
        definitions = [
            node
            for node in tree.body
            if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)) and node.name == entry.name
        ]
        if not definitions:
            errors.append(f"Missing required function {entry.signature}")
            return
        if len(definitions) > 1:
            errors.append(f"Function {entry.name} is defined {len(definitions)} times; define it once")
            return

        function = definitions[0]
        if isinstance(function, ast.AsyncFunctionDef):
            errors.append(f"{entry.name} must be a regular function, not async")
            return

        arguments = function.args
        positional = [arg.arg for arg in arguments.posonlyargs + arguments.args]
        if (
            len(positional) != len(entry.params)
            or arguments.vararg is not None
            or arguments.kwarg is not None
            or arguments.kwonlyargs
        ):
            errors.append(
                f"{entry.name} must take exactly {len(entry.params)} positional "
                f"parameter(s): {entry.signature}"
            )

        returns_value = any(
            isinstance(node, ast.Return) and node.value is not None
            for node in ast.walk(function)
        )
        if not returns_value:
            errors.append(f"{entry.name} must return the extracted data")

    # ------------------------------------------------------------------
    # Capability denylist
    # ------------------------------------------------------------------

    def _check_capabilities(self, tree: ast.Module, errors: list[str], warnings: list[str]) -> None:
        seen: set[str] = set()
        bindings = _module_bindings(tree)

        def reject(message: str) -> None:
            if message not in seen:
                seen.add(message)
                errors.append(message)

        for node in ast.walk(tree):
            if isinstance(node, ast.Import):
                for alias in node.names:
                    self._check_import(alias.name, node.lineno, reject)
            elif isinstance(node, ast.ImportFrom):
                if node.level:
                    reject(f"Relative import at line {node.lineno} is not allowed")
                    continue
                module = node.module or ""
                for alias in node.names:
                    imported = bindings.get(alias.asname or alias.name)
                    if alias.name in ESCAPE_ATTRIBUTES or (
                        imported is not None and not is_allowed_module(imported.__name__)
                    ):
                        reject(
                            f"Import of '{alias.name}' from '{module}' at line {node.lineno} is not allowed "
                            "(interpreter or process access)"
                        )
                if module == "urllib":
                    # `from urllib import parse` is the only sanctioned urllib use.
                    names = {alias.name for alias in node.names}
                    if names <= {"parse"}:
                        continue
                self._check_import(module, node.lineno, reject)
            elif isinstance(node, ast.Name) and node.id in DENIED_NAMES:
                reject(f"Use of '{node.id}' at line {node.lineno} is not allowed ({DENIED_NAMES[node.id]})")
            elif isinstance(node, ast.Attribute):
                if node.attr.startswith("__") and node.attr.endswith("__"):
                    reject(f"Access to dunder attribute '{node.attr}' at line {node.lineno} is not allowed")
                elif node.attr.startswith("_"):
                    reject(f"Access to private attribute '{node.attr}' at line {node.lineno} is not allowed")
                elif isinstance(node.value, ast.Name) and node.value.id == "urllib" and node.attr != "parse":
                    reject(f"Access to 'urllib.{node.attr}' at line {node.lineno} is not allowed (network access)")
                elif node.attr in ESCAPE_ATTRIBUTES or _PROCESS_ATTRIBUTE.match(node.attr):
                    reject(
                        f"Access to attribute '{node.attr}' at line {node.lineno} is not allowed "
                        "(interpreter or process access)"
                    )
                elif isinstance(node.value, ast.Name) and node.value.id in bindings:
                    self._check_module_attribute(bindings[node.value.id], node, reject)
            elif isinstance(node, (ast.Global, ast.Nonlocal)):
                reject(f"'{type(node).__name__.lower()}' statement at line {node.lineno} is not allowed")
            elif isinstance(node, ast.Call) and isinstance(node.func, ast.Name) and node.func.id == "print":
                message = "print() output is discarded; return records instead"
                if message not in warnings:
                    warnings.append(message)
            elif isinstance(node, ast.While) and isinstance(node.test, ast.Constant) and node.test.value is True:
                warnings.append(
                    f"Unbounded while-loop at line {node.lineno}; execution is cut off by the sandbox timeout"
                )

    def _check_module_attribute(
        self,
        module: ModuleType,
        node: ast.Attribute,
        reject: Callable[[str], None],
    ) -> None:
        value = getattr(module, node.attr, None)
        if isinstance(value, ModuleType) and not is_allowed_module(value.__name__):
            reject(
                f"Access to module '{value.__name__}' through '{module.__name__}.{node.attr}' "
                f"at line {node.lineno} is not allowed"
            )

    def _check_import(self, module: str, lineno: int, reject: Callable[[str], None]) -> None:
        if is_allowed_module(module):
            return
        root = _module_root(module)
        reason = DENIED_MODULES.get(module) or DENIED_MODULES.get(root)
        if reason is not None:
            reject(f"Import of '{module}' at line {lineno} is not allowed ({reason})")
        else:
            reject(f"Import of '{module}' at line {lineno} is not allowed (not in the sandbox allowlist)")
