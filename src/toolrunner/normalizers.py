"""Per-tool parsers turning raw stdout into structured results.

Every parser accepts any text (including ``None``) and never raises.
"""

from __future__ import annotations

import json
from typing import Any

from .models import HttpProbeResult, SubdomainResult, VulnerabilityResult

# Substrings that mark the scanner's own usage/diagnostic output.
CLI_NOISE_MARKERS = ("flag provided",)


def _lines(stdout: str | None) -> list[str]:
    if not stdout:
        return []
    return [line.strip() for line in stdout.splitlines() if line.strip()]


def _decode_object(line: str) -> dict[str, Any] | None:
    try:
        value = json.loads(line)
    except (ValueError, RecursionError):
        return None
    return value if isinstance(value, dict) else None


def parse_subdomains(stdout: str | None) -> SubdomainResult:
    return SubdomainResult(subdomains=[line for line in _lines(stdout) if not line.startswith("[")])


def parse_http_probe(stdout: str | None) -> HttpProbeResult:
    results: list[dict[str, Any]] = []
    for line in _lines(stdout):
        record = _decode_object(line)
        results.append(record if record is not None else {"url": line})
    return HttpProbeResult(results=results)


def _is_cli_noise(record: dict[str, Any]) -> bool:
    info = record.get("info")
    return isinstance(info, str) and any(marker in info for marker in CLI_NOISE_MARKERS)


def parse_vulnerabilities(stdout: str | None) -> VulnerabilityResult:
    vulnerabilities: list[dict[str, Any]] = []
    for line in _lines(stdout):
        record = _decode_object(line)
        if record is None:
            vulnerabilities.append({"raw": line})
        elif not _is_cli_noise(record):
            vulnerabilities.append(record)
    return VulnerabilityResult(vulnerabilities=vulnerabilities)
