"""Cache key templates.

A cache key template is plain text with embedded ``{{ ... }}`` actions, using the
same subset of Go ``text/template`` syntax that existing cache keys are written in::

    node-{{ arch }}-{{ checksum "package-lock.json" }}
    deps-{{ .Environment.CI_BRANCH }}-{{ epoch }}
    {{ .Environment.LOCKFILE | checksum }}

Supported functions are ``checksum(path)``, ``arch()`` and ``epoch()``; the only
data field is ``.Environment.NAME``. Templates are parsed and validated in full
before any function runs, so a syntax error never follows a file read.
"""

from __future__ import annotations

import ast
import hashlib
import logging
import os
import platform
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping, Union

from .errors import TemplateError

logger = logging.getLogger(__name__)

_STRING_PATTERN = re.compile(r'"(?:[^"\\\n]|\\.)*"')
_TOKEN_PATTERN = re.compile(
    r"""
    (?P<string>"(?:[^"\\\n]|\\.)*")
    | (?P<raw>`[^`]*`)
    | (?P<field>(?:\.[A-Za-z_][A-Za-z0-9_]*)+)
    | (?P<ident>[A-Za-z_][A-Za-z0-9_]*)
    | (?P<pipe>\|)
    """,
    re.VERBOSE,
)
_COMMENT_PATTERN = re.compile(r"^/\*.*\*/$", re.DOTALL)

_GOARCH = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "i386": "386",
    "i686": "386",
    "x86": "386",
    "armv6l": "arm",
    "armv7l": "arm",
}
_CPUINFO_MODEL_KEYS = ("model name", "cpu model", "Hardware", "Processor", "cpu")


@dataclass(frozen=True)
class _Field:
    path: tuple[str, ...]


@dataclass(frozen=True)
class _Call:
    name: str
    args: tuple[Union[str, _Field], ...]


_Operand = Union[str, _Field, _Call]


@dataclass(frozen=True)
class _Action:
    stages: tuple[_Operand, ...]


_Node = Union[str, _Action]


def host_platform() -> tuple[str, str]:
    """Return ``(os, arch)`` using Go's naming, e.g. ``("linux", "amd64")``."""
    system = platform.system().lower() or "unknown"
    machine = platform.machine().lower()
    return system, _GOARCH.get(machine, machine or "unknown")


def cpu_model() -> str:
    cpuinfo = Path("/proc/cpuinfo")
    try:
        if cpuinfo.exists():
            for line in cpuinfo.read_text(encoding="utf-8", errors="replace").splitlines():
                key, sep, value = line.partition(":")
                if sep and key.strip() in _CPUINFO_MODEL_KEYS and value.strip():
                    return value.strip()
    except OSError as exc:
        raise TemplateError("TEMPLATE_FUNCTION_FAILED", f"arch: failed to read CPU info: {exc}") from exc
    processor = platform.processor().strip()
    if processor:
        return processor
    raise TemplateError("TEMPLATE_FUNCTION_FAILED", "arch: CPU information unavailable")


def file_checksum(path: Path) -> str:
    hasher = hashlib.md5()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1 << 20), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


class TemplateResolver:
    """Evaluates cache key templates against the environment and the filesystem."""

    def __init__(
        self,
        *,
        environ: Mapping[str, str] | None = None,
        clock: Callable[[], float] = time.time,
        cpu_model_provider: Callable[[], str] = cpu_model,
        base_dir: Path | None = None,
    ) -> None:
        self._environ = environ
        self._clock = clock
        self._cpu_model = cpu_model_provider
        self._base_dir = base_dir
        self._functions: dict[str, tuple[int, Callable[..., str]]] = {
            "checksum": (1, self._checksum),
            "arch": (0, self._arch),
            "epoch": (0, self._epoch),
        }

    def resolve(self, template: str) -> str:
        nodes = self.parse(template)
        environ = dict(os.environ) if self._environ is None else dict(self._environ)
        parts: list[str] = []
        for node in nodes:
            if isinstance(node, str):
                parts.append(node)
            else:
                parts.append(self._run(node, environ))
        resolved = "".join(parts)
        logger.debug("Template resolved (template=%s, key=%s)", template, resolved)
        return resolved

    def parse(self, template: str) -> list[_Node]:
        nodes: list[_Node] = []
        pos = 0
        while True:
            start = template.find("{{", pos)
            if start < 0:
                break
            text = template[pos:start]
            body_start = start + 2
            if template[body_start : body_start + 1] == "-" and template[body_start + 1 : body_start + 2].isspace():
                text = text.rstrip()
                body_start += 1
            nodes.append(text)
            end = _action_end(template, body_start)
            body = template[body_start:end]
            pos = end + 2
            trim_right = len(body) >= 2 and body[-1] == "-" and body[-2].isspace()
            if trim_right:
                body = body[:-1]
            body = body.strip()
            if not _COMMENT_PATTERN.match(body):
                nodes.append(self._parse_action(body))
            if trim_right:
                remainder = template[pos:]
                pos += len(remainder) - len(remainder.lstrip())
        nodes.append(template[pos:])
        return [node for node in nodes if node != ""]

    def _parse_action(self, body: str) -> _Action:
        if not body:
            raise TemplateError("TEMPLATE_SYNTAX", "missing value for command")
        stages: list[list[Union[str, _Field, tuple[str, str]]]] = [[]]
        pos = 0
        while pos < len(body):
            if body[pos].isspace():
                pos += 1
                continue
            match = _TOKEN_PATTERN.match(body, pos)
            if match is None:
                raise TemplateError("TEMPLATE_SYNTAX", f"unexpected {body[pos:]!r} in action")
            pos = match.end()
            kind = match.lastgroup
            token = match.group(kind)
            if kind == "pipe":
                if not stages[-1]:
                    raise TemplateError("TEMPLATE_SYNTAX", "missing command before '|'")
                stages.append([])
            elif kind == "string":
                stages[-1].append(_unquote(token))
            elif kind == "raw":
                stages[-1].append(token[1:-1])
            elif kind == "field":
                stages[-1].append(self._parse_field(token))
            else:
                stages[-1].append(("ident", token))
        if not stages[-1]:
            raise TemplateError("TEMPLATE_SYNTAX", "missing command after '|'")
        operands: list[_Operand] = []
        for index, stage in enumerate(stages):
            operands.append(self._build_stage(stage, piped=index > 0))
        return _Action(stages=tuple(operands))

    def _parse_field(self, token: str) -> _Field:
        path = tuple(token.split(".")[1:])
        if len(path) != 2 or path[0] != "Environment":
            raise TemplateError("TEMPLATE_UNKNOWN_FIELD", f"can't evaluate field {token}")
        return _Field(path=path)

    def _build_stage(self, stage: list, *, piped: bool) -> _Operand:
        head, rest = stage[0], stage[1:]
        if isinstance(head, tuple):
            name = head[1]
            if name not in self._functions:
                raise TemplateError("TEMPLATE_UNKNOWN_FUNCTION", f'function "{name}" not defined')
            args = []
            for arg in rest:
                if isinstance(arg, tuple):
                    raise TemplateError("TEMPLATE_SYNTAX", f"unexpected {arg[1]!r} as argument to {name}")
                args.append(arg)
            arity, _ = self._functions[name]
            given = len(args) + (1 if piped else 0)
            if given != arity:
                raise TemplateError(
                    "TEMPLATE_BAD_ARGS",
                    f"wrong number of args for {name}: want {arity} got {given}",
                )
            return _Call(name=name, args=tuple(args))
        if rest or piped:
            raise TemplateError("TEMPLATE_SYNTAX", "only functions can take arguments")
        return head

    def _run(self, action: _Action, environ: Mapping[str, str]) -> str:
        value: str | None = None
        for stage in action.stages:
            if isinstance(stage, _Call):
                args = [self._value(arg, environ) for arg in stage.args]
                if value is not None:
                    args.append(value)
                _, func = self._functions[stage.name]
                value = func(*args)
            else:
                value = self._value(stage, environ)
        return value or ""

    def _value(self, operand: Union[str, _Field], environ: Mapping[str, str]) -> str:
        if isinstance(operand, _Field):
            return environ.get(operand.path[1], "")
        return operand

    def _checksum(self, path: str) -> str:
        target = Path(path)
        if self._base_dir is not None and not target.is_absolute():
            target = self._base_dir / target
        try:
            return file_checksum(target)
        except OSError as exc:
            raise TemplateError("TEMPLATE_FUNCTION_FAILED", f"checksum {path}: {exc}") from exc

    def _arch(self) -> str:
        system, machine = host_platform()
        return f"{system}-{machine}-{self._cpu_model()}"

    def _epoch(self) -> str:
        return str(int(self._clock()))


def _action_end(template: str, pos: int) -> int:
    """Index of the ``}}`` closing the action whose body starts at ``pos``."""
    while pos < len(template):
        if template.startswith("}}", pos):
            return pos
        char = template[pos]
        if char == '"':
            match = _STRING_PATTERN.match(template, pos)
            if match is None:
                raise TemplateError("TEMPLATE_SYNTAX", "unterminated quoted string")
            pos = match.end()
        elif char == "`":
            close = template.find("`", pos + 1)
            if close < 0:
                raise TemplateError("TEMPLATE_SYNTAX", "unterminated raw quoted string")
            pos = close + 1
        elif template.startswith("/*", pos):
            close = template.find("*/", pos + 2)
            if close < 0:
                raise TemplateError("TEMPLATE_SYNTAX", "unclosed comment")
            pos = close + 2
        else:
            pos += 1
    raise TemplateError("TEMPLATE_SYNTAX", "unclosed action")


def _unquote(token: str) -> str:
    try:
        value = ast.literal_eval(token)
    except (SyntaxError, ValueError) as exc:
        raise TemplateError("TEMPLATE_SYNTAX", f"invalid string literal {token}") from exc
    if not isinstance(value, str):
        raise TemplateError("TEMPLATE_SYNTAX", f"invalid string literal {token}")
    return value


def resolve_template(template: str, **kwargs) -> str:
    return TemplateResolver(**kwargs).resolve(template)
