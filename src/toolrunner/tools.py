from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, assert_never

from .models import ToolName, ToolResult
from .normalizers import parse_http_probe, parse_subdomains, parse_vulnerabilities


class UnknownToolError(ValueError):
    pass


@dataclass(frozen=True, slots=True)
class ToolSpec:
    name: ToolName
    image: str
    build_args: Callable[[str, Mapping[str, Any]], list[str]]
    parse_output: Callable[[str], ToolResult]


def _subfinder_args(target: str, params: Mapping[str, Any]) -> list[str]:
    return ["-d", target, "-silent", "-all"]


def _httpx_args(target: str, params: Mapping[str, Any]) -> list[str]:
    return ["-u", target, "-silent", "-json"]


def _nuclei_args(target: str, params: Mapping[str, Any]) -> list[str]:
    args = ["-u", target, "-silent", "-jsonl"]
    severity = params.get("severity")
    if severity:
        args += ["-severity", str(severity)]
    return args


SUBFINDER = ToolSpec(
    name=ToolName.SUBFINDER,
    image="projectdiscovery/subfinder:latest",
    build_args=_subfinder_args,
    parse_output=parse_subdomains,
)
HTTPX = ToolSpec(
    name=ToolName.HTTPX,
    image="projectdiscovery/httpx:latest",
    build_args=_httpx_args,
    parse_output=parse_http_probe,
)
NUCLEI = ToolSpec(
    name=ToolName.NUCLEI,
    image="projectdiscovery/nuclei:latest",
    build_args=_nuclei_args,
    parse_output=parse_vulnerabilities,
)


def get_tool_spec(tool: ToolName) -> ToolSpec:
    match tool:
        case ToolName.SUBFINDER:
            return SUBFINDER
        case ToolName.HTTPX:
            return HTTPX
        case ToolName.NUCLEI:
            return NUCLEI
        case _:
            assert_never(tool)


def parse_tool_name(value: str) -> ToolName:
    try:
        return ToolName(value.strip().upper())
    except ValueError as exc:
        raise UnknownToolError(f"Unknown tool: {value}") from exc
