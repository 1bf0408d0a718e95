import logging
from dataclasses import dataclass
from json import JSONDecodeError
from typing import Any, Literal

import requests

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.clickup.com/api/v2"

AuthScheme = Literal["raw", "bearer"]


@dataclass
class ApiResponse:
    success: bool
    data: Any | None = None
    error: str | None = None
    status_code: int | None = None


def authorization_header(access_token: str, scheme: AuthScheme = "raw") -> str:
    """Header value for the downstream API.

    ClickUp accepts OAuth access tokens as-is; ``bearer`` is available for
    deployments behind a gateway that requires the ``Bearer`` scheme.
    """
    if scheme == "bearer":
        if access_token.lower().startswith("bearer "):
            return access_token
        return f"Bearer {access_token}"
    return access_token


class ClickUpAPI:
    def __init__(
        self,
        access_token: str,
        base_url: str = DEFAULT_BASE_URL,
        auth_scheme: AuthScheme = "raw",
        session: requests.Session | None = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Authorization": authorization_header(access_token, auth_scheme),
                "Content-Type": "application/json",
                "Accept": "application/json",
            }
        )

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "ClickUpAPI":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _make_request(
        self,
        method: str,
        endpoint: str,
        data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> ApiResponse:
        url = f"{self.base_url}{endpoint}"

        try:
            if method.upper() == "GET":
                response = self.session.get(url, params=params, timeout=self.timeout)
            elif method.upper() == "POST":
                response = self.session.post(url, json=data, params=params, timeout=self.timeout)
            elif method.upper() == "PUT":
                response = self.session.put(url, json=data, params=params, timeout=self.timeout)
            elif method.upper() == "DELETE":
                response = self.session.delete(url, params=params, timeout=self.timeout)
            else:
                return ApiResponse(success=False, error=f"Unsupported HTTP method: {method}")

            logger.debug(f"{method.upper()} {endpoint} -> {response.status_code}")

            if response.status_code >= 400:
                try:
                    error_data = response.json()
                    error_message = error_data.get("err") or error_data.get(
                        "error", f"HTTP {response.status_code}"
                    )
                except (JSONDecodeError, AttributeError):
                    error_message = f"HTTP {response.status_code}"

                if response.status_code == 401:
                    error_message = "ClickUp authentication failed. Token may be expired."
                elif response.status_code == 429:
                    error_message = "ClickUp API rate limit exceeded. Please try again later."

                return ApiResponse(
                    success=False, error=error_message, status_code=response.status_code
                )

            try:
                json_data = response.json()
            except JSONDecodeError:
                json_data = None

            return ApiResponse(success=True, data=json_data, status_code=response.status_code)

        except requests.exceptions.RequestException as e:
            logger.error(f"ClickUp API request {method.upper()} {endpoint} failed: {e}")
            return ApiResponse(success=False, error=str(e))

    def get_user(self) -> ApiResponse:
        return self._make_request("GET", "/user")

    def get_workspaces(self) -> ApiResponse:
        return self._make_request("GET", "/team")

    def get_spaces(self, workspace_id: str, archived: bool = False) -> ApiResponse:
        return self._make_request(
            "GET", f"/team/{workspace_id}/space", params={"archived": str(archived).lower()}
        )

    def get_folders(self, space_id: str) -> ApiResponse:
        return self._make_request("GET", f"/space/{space_id}/folder")

    def get_lists(self, folder_id: str) -> ApiResponse:
        return self._make_request("GET", f"/folder/{folder_id}/list")

    def get_folderless_lists(self, space_id: str) -> ApiResponse:
        return self._make_request("GET", f"/space/{space_id}/list")

    def get_tasks(
        self,
        list_id: str,
        archived: bool = False,
        page: int | None = None,
        statuses: list[str] | None = None,
        include_closed: bool = False,
    ) -> ApiResponse:
        params: dict[str, Any] = {
            "archived": str(archived).lower(),
            "include_closed": str(include_closed).lower(),
        }
        if page is not None:
            params["page"] = page
        if statuses:
            params["statuses[]"] = statuses
        return self._make_request("GET", f"/list/{list_id}/task", params=params)

    def get_task(self, task_id: str) -> ApiResponse:
        return self._make_request("GET", f"/task/{task_id}")

    def create_task(
        self,
        list_id: str,
        name: str,
        description: str | None = None,
        status: str | None = None,
        priority: int | None = None,
        due_date: int | None = None,
        assignees: list[int] | None = None,
        tags: list[str] | None = None,
    ) -> ApiResponse:
        data: dict[str, Any] = {"name": name}
        if description is not None:
            data["description"] = description
        if status is not None:
            data["status"] = status
        if priority is not None:
            data["priority"] = priority
        if due_date is not None:
            data["due_date"] = due_date
        if assignees is not None:
            data["assignees"] = assignees
        if tags is not None:
            data["tags"] = tags
        return self._make_request("POST", f"/list/{list_id}/task", data)

    def update_task(
        self,
        task_id: str,
        name: str | None = None,
        description: str | None = None,
        status: str | None = None,
        priority: int | None = None,
        due_date: int | None = None,
    ) -> ApiResponse:
        data: dict[str, Any] = {}
        if name is not None:
            data["name"] = name
        if description is not None:
            data["description"] = description
        if status is not None:
            data["status"] = status
        if priority is not None:
            data["priority"] = priority
        if due_date is not None:
            data["due_date"] = due_date
        return self._make_request("PUT", f"/task/{task_id}", data)

    def delete_task(self, task_id: str) -> ApiResponse:
        return self._make_request("DELETE", f"/task/{task_id}")

    def search_tasks(
        self, workspace_id: str, query: str | None = None, page: int = 0
    ) -> ApiResponse:
        # The filtered team tasks endpoint has no full-text search parameter,
        # so the query is matched against task names here.
        params: dict[str, Any] = {"page": page}
        response = self._make_request("GET", f"/team/{workspace_id}/task", params=params)
        if not response.success or not query or not isinstance(response.data, dict):
            return response

        needle = query.lower()
        tasks = [
            task
            for task in response.data.get("tasks", [])
            if isinstance(task, dict) and needle in str(task.get("name", "")).lower()
        ]
        return ApiResponse(success=True, data={"tasks": tasks}, status_code=response.status_code)
