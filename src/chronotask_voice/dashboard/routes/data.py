"""Project, task and calendar endpoints.

Every edit is one ``AppStore.update`` call, so dashboard edits and voice
tool-call batches never interleave.
"""

import datetime

from fastapi import APIRouter, HTTPException, Request, Response
from pydantic import BaseModel, Field

from ...models import DataSnapshot, Project, Task, new_id
from ...store import export_json
from ...tool_executor import resolve_color

router = APIRouter()


class ProjectCreate(BaseModel):
    name: str = Field(min_length=1)
    color: str | None = None
    details: str = ""


class ProjectUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    color: str | None = None
    details: str | None = None


class TaskCreate(BaseModel):
    title: str = Field(min_length=1)
    description: str = ""


class TaskUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1)
    description: str | None = None


class DataImport(BaseModel):
    """Request body for replacing all data (backup restore)."""

    projects: list[dict]
    calendar: dict[str, list[str]] = Field(default_factory=dict)


def data_payload(snapshot: DataSnapshot) -> dict:
    payload = snapshot.to_dict()
    payload["selectedProjectId"] = snapshot.selected_project_id
    return payload


def _store(request: Request):
    return request.app.state.store


def _check_date(value: str) -> str:
    try:
        return datetime.date.fromisoformat(value).isoformat()
    except ValueError:
        raise HTTPException(status_code=400, detail=f"'{value}' is not a YYYY-MM-DD date") from None


# --- Whole data set ---


@router.get("/data")
async def get_data(request: Request):
    """Current projects, calendar and selection."""
    return data_payload(_store(request).snapshot)


@router.put("/data")
async def import_data(request: Request, body: DataImport):
    """Overwrite everything with an imported backup."""
    try:
        snapshot = DataSnapshot.from_dict(body.model_dump())
    except (KeyError, TypeError, ValueError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid data format: {e}") from e
    await _store(request).replace(snapshot)
    return data_payload(snapshot)


@router.get("/data/export")
async def export_data(request: Request):
    """Download the data as a JSON backup file."""
    return Response(
        content=export_json(_store(request).snapshot),
        media_type="application/json",
        headers={"Content-Disposition": 'attachment; filename="chronotask_backup.json"'},
    )


# --- Projects ---


@router.post("/projects", status_code=201)
async def create_project(request: Request, body: ProjectCreate):
    project = Project(
        id=new_id(),
        name=body.name,
        color=resolve_color(body.color),
        details=body.details,
    )
    await _store(request).update(lambda s: (s.with_project(project), None))
    return project.to_dict()


@router.patch("/projects/{project_id}")
async def update_project(request: Request, project_id: str, body: ProjectUpdate):
    changes = body.model_dump(exclude_none=True)
    if "color" in changes:
        changes["color"] = resolve_color(changes["color"])

    def mutate(snapshot: DataSnapshot):
        if snapshot.find_project(project_id) is None:
            return snapshot, None
        updated = snapshot.with_project_updated(project_id, **changes) if changes else snapshot
        return updated, updated.find_project(project_id)

    project = await _store(request).update(mutate)
    if project is None:
        raise HTTPException(status_code=404, detail="Project not found")
    return project.to_dict()


@router.delete("/projects/{project_id}")
async def delete_project(request: Request, project_id: str):
    """Delete a project and remove its tasks from the calendar."""
    def mutate(snapshot: DataSnapshot):
        project = snapshot.find_project(project_id)
        return snapshot.without_project(project_id), project

    project = await _store(request).update(mutate)
    if project is None:
        raise HTTPException(status_code=404, detail="Project not found")
    return {"deleted": project.id, "name": project.name}


@router.post("/projects/{project_id}/select")
async def select_project(request: Request, project_id: str):
    def mutate(snapshot: DataSnapshot):
        if snapshot.find_project(project_id) is None:
            return snapshot, False
        return snapshot.with_selection(project_id), True

    if not await _store(request).update(mutate):
        raise HTTPException(status_code=404, detail="Project not found")
    return {"selectedProjectId": project_id}


# --- Tasks ---


@router.post("/projects/{project_id}/tasks", status_code=201)
async def create_task(request: Request, project_id: str, body: TaskCreate):
    task = Task(id=new_id(), project_id=project_id, title=body.title, description=body.description)

    def mutate(snapshot: DataSnapshot):
        if snapshot.find_project(project_id) is None:
            return snapshot, False
        return snapshot.with_task(task), True

    if not await _store(request).update(mutate):
        raise HTTPException(status_code=404, detail="Project not found")
    return task.to_dict()


@router.patch("/tasks/{task_id}")
async def update_task(request: Request, task_id: str, body: TaskUpdate):
    changes = body.model_dump(exclude_none=True)

    def mutate(snapshot: DataSnapshot):
        if snapshot.find_task(task_id) is None:
            return snapshot, None
        updated = snapshot.with_task_updated(task_id, **changes) if changes else snapshot
        return updated, updated.find_task(task_id)

    task = await _store(request).update(mutate)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return task.to_dict()


@router.delete("/tasks/{task_id}")
async def delete_task(request: Request, task_id: str):
    def mutate(snapshot: DataSnapshot):
        task = snapshot.find_task(task_id)
        if task is None:
            return snapshot, None
        return snapshot.without_task(task_id), task

    task = await _store(request).update(mutate)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return {"deleted": task.id, "title": task.title}


# --- Calendar ---


@router.get("/calendar")
async def get_calendar(request: Request):
    """Calendar with task ids resolved to tasks."""
    resolved = _store(request).snapshot.tasks_by_date()
    return {
        "calendar": {date: [t.to_dict() for t in tasks] for date, tasks in sorted(resolved.items())}
    }


@router.put("/calendar/{date}/{task_id}")
async def schedule_task(request: Request, date: str, task_id: str):
    date = _check_date(date)

    def mutate(snapshot: DataSnapshot):
        if snapshot.find_task(task_id) is None:
            return snapshot, False
        return snapshot.with_scheduled(date, task_id), True

    if not await _store(request).update(mutate):
        raise HTTPException(status_code=404, detail="Task not found")
    return {"date": date, "taskIds": list(_store(request).snapshot.calendar.get(date, ()))}


@router.delete("/calendar/{date}/{task_id}")
async def unschedule_task(request: Request, date: str, task_id: str):
    date = _check_date(date)
    await _store(request).update(lambda s: (s.with_unscheduled(date, task_id), None))
    return {"date": date, "taskIds": list(_store(request).snapshot.calendar.get(date, ()))}
