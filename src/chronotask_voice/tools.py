"""Tool definitions for the Gemini Live assistant and their argument schemas.

Arguments arrive as loosely typed JSON. They are validated once here, at
the protocol boundary, into one pydantic model per tool so the executor can
rely on well-typed input.
"""

import datetime
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .models import ToolCall

END_SESSION = "endSession"

# Tool definitions the assistant can call to manage projects, tasks and the calendar
CHRONOTASK_TOOLS: list[dict[str, Any]] = [
    {
        "name": "createProject",
        "description": "Create a new project with a name, optional description and color.",
        "parameters": {
            "type": "object",
            "properties": {
                "projectName": {"type": "string"},
                "description": {"type": "string"},
                "color": {
                    "type": "string",
                    "description": "Hex color code (e.g. #ff0000) or generic name (red, blue)",
                },
            },
            "required": ["projectName"],
        },
    },
    {
        "name": "createTask",
        "description": "Create a new task within a specific project.",
        "parameters": {
            "type": "object",
            "properties": {
                "projectName": {
                    "type": "string",
                    "description": "Name of the project to add the task to",
                },
                "taskTitle": {"type": "string"},
                "description": {"type": "string"},
            },
            "required": ["projectName", "taskTitle"],
        },
    },
    {
        "name": "selectProject",
        "description": "Select and expand a project by its name to show its tasks.",
        "parameters": {
            "type": "object",
            "properties": {
                "projectName": {
                    "type": "string",
                    "description": "The fuzzy name of the project",
                },
            },
            "required": ["projectName"],
        },
    },
    {
        "name": "deleteProject",
        "description": "Delete a project by name.",
        "parameters": {
            "type": "object",
            "properties": {"projectName": {"type": "string"}},
            "required": ["projectName"],
        },
    },
    {
        "name": "deleteCurrentProject",
        "description": """Delete the currently selected (expanded) project.
        Use this when the user says "delete the selected project" or "delete this project".""",
        "parameters": {"type": "object", "properties": {}},
    },
    {
        "name": "deleteTask",
        "description": "Delete a task by title.",
        "parameters": {
            "type": "object",
            "properties": {"taskTitle": {"type": "string"}},
            "required": ["taskTitle"],
        },
    },
    {
        "name": "scheduleTask",
        "description": "Assign a task to a specific date on the calendar.",
        "parameters": {
            "type": "object",
            "properties": {
                "taskTitle": {"type": "string", "description": "The title of the task"},
                "date": {"type": "string", "description": "Date in YYYY-MM-DD format"},
            },
            "required": ["taskTitle", "date"],
        },
    },
    {
        "name": "removeTaskFromCalendar",
        "description": "Remove a task from a specific date on the calendar.",
        "parameters": {
            "type": "object",
            "properties": {
                "taskTitle": {"type": "string"},
                "date": {"type": "string", "description": "Date in YYYY-MM-DD format"},
            },
            "required": ["taskTitle", "date"],
        },
    },
    {
        "name": END_SESSION,
        "description": """End the voice conversation. Call this after saying a short goodbye
        when the user says they are done (e.g. "that's all", "goodbye", "stop listening").""",
        "parameters": {"type": "object", "properties": {}},
    },
]


class ToolArgs(BaseModel):
    """Base for tool argument models: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True, frozen=True)


class NoArgs(ToolArgs):
    pass


class CreateProjectArgs(ToolArgs):
    project_name: str = Field(alias="projectName", min_length=1)
    description: str = ""
    color: str | None = None


class CreateTaskArgs(ToolArgs):
    project_name: str = Field(alias="projectName", min_length=1)
    task_title: str = Field(alias="taskTitle", min_length=1)
    description: str = ""


class ProjectNameArgs(ToolArgs):
    project_name: str = Field(alias="projectName", min_length=1)


class TaskTitleArgs(ToolArgs):
    task_title: str = Field(alias="taskTitle", min_length=1)


class CalendarArgs(ToolArgs):
    task_title: str = Field(alias="taskTitle", min_length=1)
    date: str

    @field_validator("date")
    @classmethod
    def _iso_date(cls, value: str) -> str:
        try:
            return datetime.date.fromisoformat(value).isoformat()
        except ValueError:
            raise ValueError(f"'{value}' is not a YYYY-MM-DD date") from None


@dataclass(frozen=True)
class InvalidArguments:
    """Stands in for the argument model when validation failed."""

    reason: str


TOOL_ARGUMENTS: dict[str, type[ToolArgs]] = {
    "createProject": CreateProjectArgs,
    "createTask": CreateTaskArgs,
    "selectProject": ProjectNameArgs,
    "deleteProject": ProjectNameArgs,
    "deleteCurrentProject": NoArgs,
    "deleteTask": TaskTitleArgs,
    "scheduleTask": CalendarArgs,
    "removeTaskFromCalendar": CalendarArgs,
    END_SESSION: NoArgs,
}


def parse_tool_call(call_id: str | None, name: str, args: dict[str, Any] | None) -> ToolCall:
    """Validate a raw function call from the assistant.

    Never raises: unknown tools and bad arguments become ``InvalidArguments``
    so the call still gets an answer in its batch position.
    """
    model = TOOL_ARGUMENTS.get(name)
    if model is None:
        return ToolCall(id=call_id or "", name=name, args=InvalidArguments(f"Unknown tool: {name}"))
    try:
        parsed: Any = model.model_validate(args or {})
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'arguments'}: {err['msg']}"
            for err in e.errors()
        )
        parsed = InvalidArguments(f"Invalid arguments for {name}: {problems}")
    return ToolCall(id=call_id or "", name=name, args=parsed)
