"""Data models for ChronoTask projects, calendar and voice sessions."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any
from uuid import uuid4

import numpy as np


class Mode(str, Enum):
    """Voice assistant operating mode."""

    OFF = "off"
    WAITING = "waiting"
    ACTIVE = "active"


def new_id() -> str:
    return str(uuid4())


@dataclass(frozen=True)
class Task:
    """A unit of work belonging to one project."""

    project_id: str
    title: str
    description: str = ""
    id: str = field(default_factory=new_id)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "projectId": self.project_id,
            "title": self.title,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Task":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            project_id=data["projectId"],
            title=data["title"],
            description=data.get("description", ""),
        )


@dataclass(frozen=True)
class Project:
    """A named, coloured group of tasks."""

    name: str
    color: str = "#3b82f6"
    details: str = ""
    tasks: tuple[Task, ...] = ()
    id: str = field(default_factory=new_id)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "name": self.name,
            "color": self.color,
            "details": self.details,
            "tasks": [t.to_dict() for t in self.tasks],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Project":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            name=data["name"],
            color=data.get("color", "#3b82f6"),
            details=data.get("details", ""),
            tasks=tuple(Task.from_dict(t) for t in data.get("tasks", [])),
        )


def _matches(text: str, query: str) -> bool:
    return query.lower() in text.lower()


@dataclass(frozen=True)
class DataSnapshot:
    """Immutable copy of the application data.

    Every ``with_*``/``without_*`` method returns a new snapshot and leaves
    the receiver untouched, so a snapshot can be handed to concurrent readers
    while a writer prepares the next one.
    """

    projects: tuple[Project, ...] = ()
    calendar: dict[str, tuple[str, ...]] = field(default_factory=dict)
    selected_project_id: str | None = None

    # --- Lookup ---

    def find_project(self, project_id: str | None) -> Project | None:
        if project_id is None:
            return None
        return next((p for p in self.projects if p.id == project_id), None)

    def find_project_by_name(self, name: str) -> Project | None:
        """First project whose name contains ``name``, ignoring case."""
        return next((p for p in self.projects if _matches(p.name, name)), None)

    def find_task(self, task_id: str) -> Task | None:
        for project in self.projects:
            for task in project.tasks:
                if task.id == task_id:
                    return task
        return None

    def find_task_by_title(self, title: str) -> Task | None:
        """First task, scanning projects in order, whose title contains ``title``."""
        for project in self.projects:
            for task in project.tasks:
                if _matches(task.title, title):
                    return task
        return None

    @property
    def selected_project(self) -> Project | None:
        return self.find_project(self.selected_project_id)

    def tasks_by_date(self) -> dict[str, list[Task]]:
        """Resolve calendar ids to tasks, skipping ids that no longer exist."""
        resolved: dict[str, list[Task]] = {}
        for date, task_ids in self.calendar.items():
            tasks = [self.find_task(tid) for tid in task_ids]
            resolved[date] = [t for t in tasks if t is not None]
        return resolved

    # --- Projects ---

    def with_project(self, project: Project) -> "DataSnapshot":
        return replace(self, projects=self.projects + (project,))

    def with_project_updated(self, project_id: str, **changes: Any) -> "DataSnapshot":
        projects = tuple(
            replace(p, **changes) if p.id == project_id else p for p in self.projects
        )
        return replace(self, projects=projects)

    def without_project(self, project_id: str) -> "DataSnapshot":
        """Remove a project, its calendar entries, and the selection if it pointed here."""
        project = self.find_project(project_id)
        if project is None:
            return self
        task_ids = {t.id for t in project.tasks}
        selected = None if self.selected_project_id == project_id else self.selected_project_id
        return replace(
            self,
            projects=tuple(p for p in self.projects if p.id != project_id),
            calendar=_purge_calendar(self.calendar, task_ids),
            selected_project_id=selected,
        )

    def with_selection(self, project_id: str | None) -> "DataSnapshot":
        if project_id == self.selected_project_id:
            return self
        return replace(self, selected_project_id=project_id)

    # --- Tasks ---

    def with_task(self, task: Task) -> "DataSnapshot":
        projects = tuple(
            replace(p, tasks=p.tasks + (task,)) if p.id == task.project_id else p
            for p in self.projects
        )
        return replace(self, projects=projects)

    def with_task_updated(self, task_id: str, **changes: Any) -> "DataSnapshot":
        projects = tuple(
            replace(p, tasks=tuple(replace(t, **changes) if t.id == task_id else t for t in p.tasks))
            for p in self.projects
        )
        return replace(self, projects=projects)

    def without_task(self, task_id: str) -> "DataSnapshot":
        projects = tuple(
            replace(p, tasks=tuple(t for t in p.tasks if t.id != task_id)) for p in self.projects
        )
        return replace(
            self, projects=projects, calendar=_purge_calendar(self.calendar, {task_id})
        )

    # --- Calendar ---

    def with_scheduled(self, date: str, task_id: str) -> "DataSnapshot":
        current = self.calendar.get(date, ())
        if task_id in current:
            return self
        calendar = dict(self.calendar)
        calendar[date] = current + (task_id,)
        return replace(self, calendar=calendar)

    def with_unscheduled(self, date: str, task_id: str) -> "DataSnapshot":
        current = self.calendar.get(date)
        if not current or task_id not in current:
            return self
        calendar = dict(self.calendar)
        remaining = tuple(tid for tid in current if tid != task_id)
        if remaining:
            calendar[date] = remaining
        else:
            del calendar[date]
        return replace(self, calendar=calendar)

    # --- Serialization ---

    def to_dict(self) -> dict:
        """Convert to the persisted ``{projects, calendar}`` layout."""
        return {
            "projects": [p.to_dict() for p in self.projects],
            "calendar": {date: list(ids) for date, ids in self.calendar.items()},
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DataSnapshot":
        """Create from dictionary.

        Calendar ids that do not resolve to a task are dropped. The first
        project, if any, becomes the selection.
        """
        projects = tuple(Project.from_dict(p) for p in data.get("projects", []))
        known = {t.id for p in projects for t in p.tasks}
        calendar: dict[str, tuple[str, ...]] = {}
        for date, task_ids in (data.get("calendar") or {}).items():
            kept = tuple(tid for tid in task_ids if tid in known)
            if kept:
                calendar[date] = kept
        selected = projects[0].id if projects else None
        return cls(projects=projects, calendar=calendar, selected_project_id=selected)


def _purge_calendar(
    calendar: dict[str, tuple[str, ...]], task_ids: set[str]
) -> dict[str, tuple[str, ...]]:
    purged = {}
    for date, ids in calendar.items():
        kept = tuple(tid for tid in ids if tid not in task_ids)
        if kept:
            purged[date] = kept
    return purged


# --- Voice session models ---


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation issued by the assistant.

    ``args`` is the validated argument model for ``name`` (see ``tools.py``).
    """

    id: str
    name: str
    args: Any


@dataclass(frozen=True)
class ToolResult:
    """The answer to one ToolCall."""

    id: str
    name: str
    result: dict[str, Any]

    @property
    def status(self) -> str:
        return self.result.get("status", "")


@dataclass
class AudioFrame:
    """One block of captured microphone samples."""

    samples: np.ndarray
    captured_at: float
    rms: float = 0.0
    voiced: bool = False
    # EncodedAudio sent to the session
    encoded: Any = None


@dataclass
class PlaybackChunk:
    """Decoded assistant audio placed on the output clock."""

    samples: np.ndarray
    start: float
    duration: float

    @property
    def end(self) -> float:
        return self.start + self.duration
