from dataclasses import dataclass, field
from datetime import datetime, timezone


@dataclass
class JobState:
    name: str
    last_started_at: datetime | None = None
    last_finished_at: datetime | None = None
    last_error: str | None = None
    runs: int = 0
    consecutive_failures: int = 0

    def as_dict(self) -> dict:
        return {
            "name": self.name,
            "last_started_at": self.last_started_at.isoformat() if self.last_started_at else None,
            "last_finished_at": self.last_finished_at.isoformat() if self.last_finished_at else None,
            "last_error": self.last_error,
            "runs": self.runs,
            "consecutive_failures": self.consecutive_failures,
        }


@dataclass
class RuntimeState:
    is_running: bool = False
    started_at: datetime | None = None
    jobs: dict[str, JobState] = field(default_factory=dict)
    notes: list[str] = field(default_factory=list)

    def job(self, name: str) -> JobState:
        if name not in self.jobs:
            self.jobs[name] = JobState(name=name)
        return self.jobs[name]

    def mark_start(self, name: str) -> None:
        job = self.job(name)
        job.last_started_at = datetime.now(timezone.utc)
        job.runs += 1

    def mark_finish(self, name: str) -> None:
        job = self.job(name)
        job.last_finished_at = datetime.now(timezone.utc)
        job.last_error = None
        job.consecutive_failures = 0

    def mark_failure(self, name: str, error: str) -> None:
        job = self.job(name)
        job.last_finished_at = datetime.now(timezone.utc)
        job.last_error = error
        job.consecutive_failures += 1

    def add_note(self, note: str) -> None:
        self.notes.append(note)
        del self.notes[:-50]

    def as_dict(self) -> dict:
        return {
            "is_running": self.is_running,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "jobs": {name: job.as_dict() for name, job in sorted(self.jobs.items())},
            "notes": list(self.notes),
        }


runtime_state = RuntimeState()
