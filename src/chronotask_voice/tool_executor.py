"""Applies assistant tool calls to application data snapshots.

Pure: no I/O, no shared state. A batch chains every call against the
snapshot produced by the previous one, so later calls see earlier effects
while nothing outside the batch sees intermediate states.
"""

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from .errors import ToolExecutionError
from .models import DataSnapshot, Project, Task, ToolCall, ToolResult, new_id
from .tools import (
    END_SESSION,
    CalendarArgs,
    CreateProjectArgs,
    CreateTaskArgs,
    InvalidArguments,
    ProjectNameArgs,
    TaskTitleArgs,
)

logger = logging.getLogger(__name__)

DEFAULT_COLOR = "#3b82f6"

# Spoken colour names mapped to the palette used by the project board
COLOR_NAMES = {
    "red": "#ef4444",
    "blue": "#3b82f6",
    "green": "#10b981",
    "yellow": "#f59e0b",
    "purple": "#8b5cf6",
    "orange": "#f97316",
    "pink": "#ec4899",
    "gray": "#6b7280",
}


def resolve_color(color: str | None) -> str:
    if not color:
        return DEFAULT_COLOR
    return COLOR_NAMES.get(color.lower(), color)


@dataclass
class BatchOutcome:
    """Result of applying one batch of tool calls."""

    snapshot: DataSnapshot
    results: list[ToolResult]
    end_session: bool = False


class ToolExecutor:
    """Executes validated tool calls against a DataSnapshot."""

    def __init__(self, id_factory: Callable[[], str] = new_id):
        self._new_id = id_factory
        self._handlers = {
            "createProject": self._create_project,
            "createTask": self._create_task,
            "selectProject": self._select_project,
            "deleteProject": self._delete_project,
            "deleteCurrentProject": self._delete_current_project,
            "deleteTask": self._delete_task,
            "scheduleTask": self._schedule_task,
            "removeTaskFromCalendar": self._remove_task_from_calendar,
            END_SESSION: self._end_session,
        }

    def apply(self, call: ToolCall, state: DataSnapshot) -> tuple[DataSnapshot, ToolResult]:
        """Apply one call.

        Never raises: failures become a status message and leave ``state``
        unchanged.

        Returns:
            (new snapshot, result); the snapshot is ``state`` itself when nothing changed
        """
        try:
            if isinstance(call.args, InvalidArguments):
                new_state, status = state, call.args.reason
            else:
                handler = self._handlers.get(call.name)
                if handler is None:
                    raise ToolExecutionError(f"No handler for tool '{call.name}'")
                new_state, status = handler(call.args, state)
        except Exception:
            logger.exception("Tool execution error in %s", call.name)
            new_state, status = state, "Error executing command"
        return new_state, ToolResult(id=call.id, name=call.name, result={"status": status})

    def apply_batch(self, calls: Sequence[ToolCall], state: DataSnapshot) -> BatchOutcome:
        """Apply calls in order, each against the previous call's snapshot."""
        results: list[ToolResult] = []
        end_session = False
        current = state
        for call in calls:
            current, result = self.apply(call, current)
            results.append(result)
            if call.name == END_SESSION:
                end_session = True
        return BatchOutcome(snapshot=current, results=results, end_session=end_session)

    # --- Handlers ---

    def _create_project(self, args: CreateProjectArgs, state: DataSnapshot):
        project = Project(
            id=self._new_id(),
            name=args.project_name,
            color=resolve_color(args.color),
            details=args.description,
        )
        new_state = state.with_project(project).with_selection(project.id)
        return new_state, f"Created project: {project.name}"

    def _create_task(self, args: CreateTaskArgs, state: DataSnapshot):
        project = state.find_project_by_name(args.project_name)
        if project is None:
            return state, f'Project "{args.project_name.lower()}" not found'
        task = Task(
            id=self._new_id(),
            project_id=project.id,
            title=args.task_title,
            description=args.description,
        )
        return state.with_task(task), f'Added task "{task.title}" to project "{project.name}"'

    def _select_project(self, args: ProjectNameArgs, state: DataSnapshot):
        project = state.find_project_by_name(args.project_name)
        if project is None:
            return state, "Project not found"
        return state.with_selection(project.id), f"Selected project: {project.name}"

    def _delete_project(self, args: ProjectNameArgs, state: DataSnapshot):
        project = state.find_project_by_name(args.project_name)
        if project is None:
            return state, "Project not found"
        return state.without_project(project.id), f"Deleted project: {project.name}"

    def _delete_current_project(self, args, state: DataSnapshot):
        project = state.selected_project
        if project is None:
            return state, "No project is currently selected"
        return state.without_project(project.id), f"Deleted selected project: {project.name}"

    def _delete_task(self, args: TaskTitleArgs, state: DataSnapshot):
        task = state.find_task_by_title(args.task_title)
        if task is None:
            return state, "Task not found"
        return state.without_task(task.id), f"Deleted task: {task.title}"

    def _schedule_task(self, args: CalendarArgs, state: DataSnapshot):
        task = state.find_task_by_title(args.task_title)
        if task is None:
            return state, "Task not found"
        return state.with_scheduled(args.date, task.id), f"Scheduled {task.title} for {args.date}"

    def _remove_task_from_calendar(self, args: CalendarArgs, state: DataSnapshot):
        task = state.find_task_by_title(args.task_title)
        if task is None:
            return state, "Task not found"
        return state.with_unscheduled(args.date, task.id), f"Removed {task.title} from {args.date}"

    def _end_session(self, args, state: DataSnapshot):
        return state, "Ending session"
