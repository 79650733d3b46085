from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}


class ToolName(str, Enum):
    SUBFINDER = "SUBFINDER"
    HTTPX = "HTTPX"
    NUCLEI = "NUCLEI"


@dataclass(frozen=True, slots=True)
class SubdomainResult:
    subdomains: list[str]

    @property
    def count(self) -> int:
        return len(self.subdomains)

    def to_dict(self) -> dict[str, Any]:
        return {"subdomains": list(self.subdomains), "count": self.count}


@dataclass(frozen=True, slots=True)
class HttpProbeResult:
    results: list[dict[str, Any]]

    @property
    def count(self) -> int:
        return len(self.results)

    def to_dict(self) -> dict[str, Any]:
        return {"results": list(self.results), "count": self.count}


@dataclass(frozen=True, slots=True)
class VulnerabilityResult:
    vulnerabilities: list[dict[str, Any]]

    @property
    def count(self) -> int:
        return len(self.vulnerabilities)

    def to_dict(self) -> dict[str, Any]:
        return {"vulnerabilities": list(self.vulnerabilities), "count": self.count}


ToolResult = SubdomainResult | HttpProbeResult | VulnerabilityResult


def result_from_dict(tool_name: ToolName, data: dict[str, Any]) -> ToolResult:
    """Rebuild a stored result. The type comes from the job's tool, not the payload."""
    match tool_name:
        case ToolName.SUBFINDER:
            return SubdomainResult(subdomains=[str(item) for item in data.get("subdomains", [])])
        case ToolName.HTTPX:
            return HttpProbeResult(results=list(data.get("results", [])))
        case ToolName.NUCLEI:
            return VulnerabilityResult(vulnerabilities=list(data.get("vulnerabilities", [])))
    raise ValueError(f"Unknown tool: {tool_name}")


@dataclass(slots=True)
class Job:
    id: str
    user_id: str | None
    tool_name: ToolName
    target_input: str
    status: JobStatus
    priority: int
    created_at: str
    target_id: str | None = None
    params: dict[str, Any] = field(default_factory=dict)
    started_at: str | None = None
    completed_at: str | None = None
    duration_ms: int | None = None
    exit_code: int | None = None
    result: ToolResult | None = None
    result_count: int | None = None
    raw_output: str | None = None
    error_output: str | None = None
    runner_node: str | None = None
    container_id: str | None = None


@dataclass(frozen=True, slots=True)
class ContainerOutcome:
    exit_code: int
    stdout: str
    stderr: str
    container_id: str
