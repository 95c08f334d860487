"""Result dataclasses for best-effort cleanup operations."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class TeardownResult:
    done: list[str] = field(default_factory=list)
    skipped_missing: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def as_dict(self) -> dict[str, list[str]]:
        return {
            'done': list(self.done),
            'skipped_missing': list(self.skipped_missing),
            'failed': list(self.failed),
        }
