from __future__ import annotations

from dataclasses import dataclass, field

ERROR = "ERROR"
WARNING = "WARNING"


@dataclass(frozen=True)
class ValidationIssue:
    severity: str
    location: str
    message: str

    def __str__(self) -> str:
        return f"[{self.severity}] {self.location}: {self.message}"


@dataclass
class Report:
    """Issues collected by a diagnostic pass. Nothing is corrected automatically."""

    title: str
    issues: list[ValidationIssue] = field(default_factory=list)
    counts: dict[str, int] = field(default_factory=dict)

    def error(self, location: str, message: str) -> None:
        self.issues.append(ValidationIssue(ERROR, location, message))

    def warning(self, location: str, message: str) -> None:
        self.issues.append(ValidationIssue(WARNING, location, message))

    def count(self, key: str, amount: int = 1) -> None:
        self.counts[key] = self.counts.get(key, 0) + amount

    @property
    def errors(self) -> list[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity == ERROR]

    @property
    def ok(self) -> bool:
        return not self.errors

    def render(self) -> str:
        lines = [self.title]
        lines.extend(f"  {key}: {value}" for key, value in sorted(self.counts.items()))
        lines.extend(f"  {issue}" for issue in self.issues)
        if not self.issues:
            lines.append("  no issues")
        return "\n".join(lines)
