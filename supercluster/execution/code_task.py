"""Encode a Python function into ``{name, params, body}`` and rebuild it.

The worker compiles the body into a fresh module namespace, so an encoded
function may only use builtins, its parameters and names it imports
itself. There is no sandbox: the code runs with the worker's privileges.
"""

from __future__ import annotations

import ast
import builtins
import inspect
import keyword
import textwrap
from dataclasses import dataclass, field
from typing import Any, Callable

_PLAIN_PARAMS = (
    inspect.Parameter.POSITIONAL_ONLY,
    inspect.Parameter.POSITIONAL_OR_KEYWORD,
)


@dataclass(frozen=True)
class CodeTask:
    """Transportable form of a function."""

    name: str
    params: list[str] = field(default_factory=list)
    body: str = ""


def encode_callable(func: Callable[..., Any]) -> CodeTask:
    """Extract name, parameter names and body source from ``func``.

    Raises:
        TypeError: If ``func`` is not a plain function.
        ValueError: For lambdas, coroutines or ``*args``/``**kwargs``.
        OSError: If the source is not available.
    """
    if not inspect.isfunction(func):
        raise TypeError(f"expected a function, got {type(func).__name__}")
    if func.__name__ == "<lambda>":
        raise ValueError("lambdas cannot be encoded, use a def")
    if inspect.iscoroutinefunction(func):
        raise ValueError("coroutine functions cannot be encoded")

    params = []
    for param in inspect.signature(func).parameters.values():
        if param.kind not in _PLAIN_PARAMS:
            raise ValueError(f"unsupported parameter kind for {param.name!r}")
        params.append(param.name)

    source = textwrap.dedent(inspect.getsource(func))
    tree = ast.parse(source)
    node = next(
        (n for n in tree.body if isinstance(n, ast.FunctionDef) and n.name == func.__name__),
        None,
    )
    if node is None:
        raise ValueError(f"could not locate the definition of {func.__name__!r}")

    first, last = node.body[0], node.body[-1]
    if first.lineno == node.lineno:
        # One-line definition: ``def f(x): return x``
        segments = [ast.get_source_segment(source, stmt) or "" for stmt in node.body]
        body = "\n".join(segments)
    else:
        lines = source.splitlines()
        body = textwrap.dedent("\n".join(lines[first.lineno - 1 : last.end_lineno]))
    return CodeTask(name=func.__name__, params=params, body=body)


def build_callable(name: str, params: list[str], body: str) -> Callable[..., Any]:
    """Compile a function from its encoded parts.

    Raises:
        ValueError: If the name or a parameter is not an identifier.
        SyntaxError: If the body does not compile.
    """
    for ident in [name, *params]:
        if not ident.isidentifier() or keyword.iskeyword(ident):
            raise ValueError(f"not a valid identifier: {ident!r}")

    source = f"def {name}({', '.join(params)}):\n"
    source += textwrap.indent(textwrap.dedent(body), "    ") + "\n"
    code = compile(source, f"<task:{name}>", "exec")
    namespace: dict[str, Any] = {"__builtins__": builtins, "__name__": f"task_{name}"}
    exec(code, namespace)
    return namespace[name]
