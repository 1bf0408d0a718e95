"""ClickUp tools served over MCP.

Each handler takes a :class:`ClickUpAPI` and returns a JSON-serializable dict;
a dict with an ``error`` key reports a tool failure. :func:`register_tools`
exposes the handlers as FastMCP tools bound to the calling session's token.
"""

import json
import logging
from collections.abc import Callable
from typing import Any

from mcp.server.fastmcp.server import FastMCP
from starlette.concurrency import run_in_threadpool

from .clickup_api import ApiResponse, ClickUpAPI
from .errors import AuthenticationRequired, UnknownSession

logger = logging.getLogger(__name__)

ClientProvider = Callable[[], ClickUpAPI]


def validate_list_response(
    response: ApiResponse, context: str, key: str | None = None
) -> tuple[list[dict[str, Any]], str | None]:
    """Validate that an API response contains a list of dictionaries.

    Args:
        response: The API response to validate
        context: Description of what we're fetching (e.g., "spaces", "tasks")
        key: Optional key to extract list from wrapped response (e.g., "teams" for {"teams": [...]})

    Returns:
        Tuple of (validated list, error message or None)
    """
    if not response.success:
        return [], response.error or f"Failed to fetch {context}"

    data = response.data
    if data is None:
        return [], None

    if isinstance(data, dict):
        for k in [key, context]:
            if k and k in data:
                data = data[k]
                break
        else:
            error_msg = f"ClickUp returned {context} without expected key: {list(data.keys())}"
            logger.error(error_msg)
            return [], error_msg

    if not isinstance(data, list):
        error_msg = f"ClickUp returned invalid {context} format: expected list, got {type(data).__name__}"
        logger.error(error_msg)
        return [], error_msg

    return [item for item in data if isinstance(item, dict)], None


def validate_dict_response(
    response: ApiResponse, context: str, key: str | None = None
) -> tuple[dict[str, Any] | None, str | None]:
    """Validate that an API response contains a dictionary.

    Args:
        response: The API response to validate
        context: Description of what we're fetching (e.g., "task", "user")
        key: Optional key to unwrap (e.g., "user" for {"user": {...}})

    Returns:
        Tuple of (validated dict or None, error message or None)
    """
    if not response.success:
        return None, response.error or f"Failed to fetch {context}"

    data = response.data
    if key is not None and isinstance(data, dict):
        data = data.get(key)

    if data is None:
        return None, f"No {context} data returned from ClickUp"

    if not isinstance(data, dict):
        error_msg = f"ClickUp returned invalid {context} format: expected dict, got {type(data).__name__}"
        logger.error(error_msg)
        return None, error_msg

    return data, None


def _summarize_task(task: dict[str, Any]) -> dict[str, Any]:
    status = task.get("status")
    priority = task.get("priority")
    return {
        "id": task.get("id"),
        "name": task.get("name", ""),
        "status": status.get("status") if isinstance(status, dict) else status,
        "priority": priority.get("priority") if isinstance(priority, dict) else priority,
        "due_date": task.get("due_date"),
        "url": task.get("url"),
        "assignees": [a.get("username") for a in task.get("assignees") or [] if isinstance(a, dict)],
    }


def _id_and_name(items: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [{"id": item.get("id"), "name": item.get("name")} for item in items]


def get_user(api: ClickUpAPI) -> dict[str, Any]:
    user, error = validate_dict_response(api.get_user(), "user", key="user")
    if error or user is None:
        return {"error": error}
    return {"id": user.get("id"), "username": user.get("username"), "email": user.get("email")}


def get_workspaces(api: ClickUpAPI) -> dict[str, Any]:
    teams, error = validate_list_response(api.get_workspaces(), "workspaces", key="teams")
    if error:
        return {"error": error}
    return {"workspaces": _id_and_name(teams)}


def get_spaces(api: ClickUpAPI, workspace_id: str) -> dict[str, Any]:
    spaces, error = validate_list_response(api.get_spaces(workspace_id), "spaces")
    if error:
        return {"error": error}
    return {"spaces": _id_and_name(spaces)}


def get_folders(api: ClickUpAPI, space_id: str) -> dict[str, Any]:
    folders, error = validate_list_response(api.get_folders(space_id), "folders")
    if error:
        return {"error": error}
    return {
        "folders": [
            {
                "id": f.get("id"),
                "name": f.get("name"),
                "lists": _id_and_name(
                    [lst for lst in f.get("lists") or [] if isinstance(lst, dict)]
                ),
            }
            for f in folders
        ]
    }


def get_lists(api: ClickUpAPI, folder_id: str) -> dict[str, Any]:
    lists, error = validate_list_response(api.get_lists(folder_id), "lists")
    if error:
        return {"error": error}
    return {"lists": _id_and_name(lists)}


def get_lists_in_space(api: ClickUpAPI, space_id: str) -> dict[str, Any]:
    lists, error = validate_list_response(api.get_folderless_lists(space_id), "lists")
    if error:
        return {"error": error}
    return {"lists": _id_and_name(lists)}


def get_tasks(
    api: ClickUpAPI,
    list_id: str,
    page: int | None = None,
    statuses: list[str] | None = None,
    include_closed: bool = False,
) -> dict[str, Any]:
    response = api.get_tasks(list_id, page=page, statuses=statuses, include_closed=include_closed)
    tasks, error = validate_list_response(response, "tasks")
    if error:
        return {"error": error}
    return {"tasks": [_summarize_task(t) for t in tasks], "count": len(tasks)}


def get_task(api: ClickUpAPI, task_id: str) -> dict[str, Any]:
    task, error = validate_dict_response(api.get_task(task_id), "task")
    if error or task is None:
        return {"error": error}
    return _summarize_task(task)


def create_task(
    api: ClickUpAPI,
    list_id: str,
    name: str,
    description: str | None = None,
    status: str | None = None,
    priority: int | None = None,
    due_date: int | None = None,
    tags: list[str] | None = None,
) -> dict[str, Any]:
    response = api.create_task(
        list_id,
        name=name,
        description=description,
        status=status,
        priority=priority,
        due_date=due_date,
        tags=tags,
    )
    if not response.success:
        return {"error": response.error}
    task = response.data if isinstance(response.data, dict) else {}
    return {"id": task.get("id"), "name": task.get("name", name), "status": "created"}


def update_task(api: ClickUpAPI, task_id: str, **fields: Any) -> dict[str, Any]:
    updates = {k: v for k, v in fields.items() if v is not None}
    if not updates:
        return {"error": "No fields to update"}
    response = api.update_task(task_id, **updates)
    if not response.success:
        return {"error": response.error}
    return {"id": task_id, "updated_fields": list(updates), "status": "updated"}


def delete_task(api: ClickUpAPI, task_id: str) -> dict[str, Any]:
    response = api.delete_task(task_id)
    if not response.success:
        return {"error": response.error}
    return {"id": task_id, "status": "deleted"}


def search_tasks(api: ClickUpAPI, workspace_id: str, query: str) -> dict[str, Any]:
    tasks, error = validate_list_response(api.search_tasks(workspace_id, query=query), "tasks")
    if error:
        return {"error": error}
    return {"tasks": [_summarize_task(t) for t in tasks], "count": len(tasks)}


def register_tools(app: FastMCP, client_for_request: ClientProvider) -> None:
    """
    Register the ClickUp tools on ``app``.

    ``client_for_request`` returns a client for the session behind the current
    MCP request and raises :class:`AuthenticationRequired` when that session
    has no usable token. The client is closed after every call.
    """

    async def run(name: str, handler: Callable[..., dict[str, Any]], /, **arguments: Any) -> str:
        logger.info(f"=== {name} called ===")
        try:
            api = client_for_request()
        except (AuthenticationRequired, UnknownSession) as e:
            logger.warning(f"{name} rejected: {e}")
            return json.dumps({"error": str(e)})

        with api:
            result = await run_in_threadpool(handler, api, **arguments)

        if "error" in result:
            logger.error(f"{name} failed: {result['error']}")
        return json.dumps(result, indent=2)

    @app.tool()
    async def clickup_get_user() -> str:
        """Get the ClickUp user that authorized this session."""
        return await run("clickup_get_user", get_user)

    @app.tool()
    async def clickup_get_workspaces() -> str:
        """List the ClickUp workspaces (teams) the user can access."""
        return await run("clickup_get_workspaces", get_workspaces)

    @app.tool()
    async def clickup_get_spaces(workspace_id: str) -> str:
        """
        List the spaces in a workspace.

        Args:
            workspace_id: Workspace (team) id from clickup_get_workspaces
        """
        return await run("clickup_get_spaces", get_spaces, workspace_id=workspace_id)

    @app.tool()
    async def clickup_get_folders(space_id: str) -> str:
        """
        List the folders in a space, each with the lists it contains.

        Args:
            space_id: Space id from clickup_get_spaces
        """
        return await run("clickup_get_folders", get_folders, space_id=space_id)

    @app.tool()
    async def clickup_get_lists(folder_id: str) -> str:
        """List the lists inside a folder."""
        return await run("clickup_get_lists", get_lists, folder_id=folder_id)

    @app.tool()
    async def clickup_get_lists_in_space(space_id: str) -> str:
        """List the lists that sit directly in a space, outside any folder."""
        return await run("clickup_get_lists_in_space", get_lists_in_space, space_id=space_id)

    @app.tool()
    async def clickup_get_tasks(
        list_id: str,
        page: int | None = None,
        statuses: list[str] | None = None,
        include_closed: bool = False,
    ) -> str:
        """
        List tasks in a ClickUp list.

        Args:
            list_id: List to read tasks from
            page: Zero-based result page; ClickUp returns up to 100 tasks per page
            statuses: Only return tasks in these statuses
            include_closed: Include closed tasks

        Returns:
            JSON object with "tasks" (id, name, status, priority, due_date, url,
            assignees) and "count"
        """
        return await run(
            "clickup_get_tasks",
            get_tasks,
            list_id=list_id,
            page=page,
            statuses=statuses,
            include_closed=include_closed,
        )

    @app.tool()
    async def clickup_get_task(task_id: str) -> str:
        """Get a single task by id."""
        return await run("clickup_get_task", get_task, task_id=task_id)

    @app.tool()
    async def clickup_create_task(
        list_id: str,
        name: str,
        description: str | None = None,
        status: str | None = None,
        priority: int | None = None,
        due_date: int | None = None,
        tags: list[str] | None = None,
    ) -> str:
        """
        Create a task in a ClickUp list.

        Args:
            list_id: List to create the task in
            name: Task name
            description: Task description
            status: Initial status; must exist on the list
            priority: 1 (urgent) to 4 (low)
            due_date: Due date as Unix time in milliseconds
            tags: Tag names to apply
        """
        return await run(
            "clickup_create_task",
            create_task,
            list_id=list_id,
            name=name,
            description=description,
            status=status,
            priority=priority,
            due_date=due_date,
            tags=tags,
        )

    @app.tool()
    async def clickup_update_task(
        task_id: str,
        name: str | None = None,
        description: str | None = None,
        status: str | None = None,
        priority: int | None = None,
        due_date: int | None = None,
    ) -> str:
        """
        Update fields of an existing task. Only the given fields change.

        Args:
            task_id: Task to update
            name: New name
            description: New description
            status: New status
            priority: 1 (urgent) to 4 (low)
            due_date: Due date as Unix time in milliseconds
        """
        return await run(
            "clickup_update_task",
            update_task,
            task_id=task_id,
            name=name,
            description=description,
            status=status,
            priority=priority,
            due_date=due_date,
        )

    @app.tool()
    async def clickup_delete_task(task_id: str) -> str:
        """Delete a task."""
        return await run("clickup_delete_task", delete_task, task_id=task_id)

    @app.tool()
    async def clickup_search_tasks(workspace_id: str, query: str) -> str:
        """
        Search task names in a workspace (case-insensitive substring match).

        Args:
            workspace_id: Workspace (team) to search
            query: Text to look for in task names
        """
        return await run(
            "clickup_search_tasks", search_tasks, workspace_id=workspace_id, query=query
        )
