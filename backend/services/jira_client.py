"""Thin Jira Cloud REST client used by the telemetry collaborators."""

from typing import Optional
import requests

ISSUE_FIELDS = [
    "summary", "issuetype", "status", "resolution", "assignee", "priority",
    "created", "updated", "resolutiondate", "labels"
]

# Raised by a failed call or by walking a payload of an unexpected shape
FETCH_ERRORS = (requests.RequestException, ValueError, AttributeError, KeyError, TypeError)


class JiraClient:
    """Authenticated access to the Jira REST and Agile APIs.

    Every method raises ``requests.RequestException`` (including
    ``HTTPError`` for non-2xx responses); callers decide how to degrade.
    """

    def __init__(self, server: str, email: str, token: str, timeout: int = 30):
        self.server = server.rstrip("/")
        self.email = email
        self.token = token
        self.timeout = timeout

    def _request(self, endpoint: str, params: Optional[dict] = None):
        """Make authenticated GET request to Jira API."""
        response = requests.get(
            f"{self.server}{endpoint}",
            auth=(self.email, self.token),
            headers={"Accept": "application/json"},
            params=params,
            timeout=self.timeout
        )
        response.raise_for_status()
        return response.json()

    def _post(self, endpoint: str, body: dict):
        response = requests.post(
            f"{self.server}{endpoint}",
            auth=(self.email, self.token),
            headers={"Accept": "application/json", "Content-Type": "application/json"},
            json=body,
            timeout=self.timeout
        )
        response.raise_for_status()
        return response.json()

    def _paginate(self, endpoint: str, key: str, params: Optional[dict] = None,
                  page_size: int = 50, limit: Optional[int] = None) -> list:
        """Collect ``key`` values across startAt/maxResults pages."""
        results = []
        start_at = 0

        while True:
            page_params = dict(params or {})
            page_params.update({"startAt": start_at, "maxResults": page_size})
            data = self._request(endpoint, params=page_params)

            values = data.get(key, [])
            results.extend(values)

            if limit is not None and len(results) >= limit:
                return results[:limit]
            if data.get("isLast") or len(values) < page_size:
                break

            start_at += page_size

        return results

    # Project and workflow metadata

    def get_project(self, project_key: str) -> dict:
        return self._request(f"/rest/api/3/project/{project_key}")

    def get_project_statuses(self, project_key: str) -> list:
        """Statuses grouped by issue type for one project."""
        return self._request(f"/rest/api/3/project/{project_key}/statuses")

    def get_all_statuses(self) -> list:
        return self._request("/rest/api/3/status")

    def get_fields(self) -> list:
        return self._request("/rest/api/3/field")

    # Boards and sprints

    def get_boards(self, project_key: str) -> list:
        data = self._request(
            "/rest/agile/1.0/board",
            params={"projectKeyOrId": project_key, "maxResults": 50}
        )
        return data.get("values", [])

    def get_board_configuration(self, board_id: int) -> dict:
        return self._request(f"/rest/agile/1.0/board/{board_id}/configuration")

    def get_sprints(self, board_id: int, state: str) -> list:
        return self._paginate(
            f"/rest/agile/1.0/board/{board_id}/sprint",
            "values",
            params={"state": state}
        )

    def get_sprint_issues(self, sprint_id: int, fields: list) -> list:
        """All issues in a sprint, with their status changelog."""
        return self._paginate(
            f"/rest/agile/1.0/sprint/{sprint_id}/issue",
            "issues",
            params={"fields": ",".join(fields), "expand": "changelog"},
            page_size=100
        )

    def get_board_issues(self, board_id: int, fields: list, limit: int = 100) -> list:
        return self._paginate(
            f"/rest/agile/1.0/board/{board_id}/issue",
            "issues",
            params={"fields": ",".join(fields), "expand": "changelog"},
            page_size=100,
            limit=limit
        )

    # Search

    def search(self, jql: str, fields: list, limit: int = 100) -> list:
        """Run a JQL search including changelogs, following page tokens."""
        issues = []
        next_page_token = None

        while True:
            body = {
                "jql": jql,
                "fields": fields,
                "expand": "changelog",
                "maxResults": min(100, limit - len(issues))
            }
            if next_page_token:
                body["nextPageToken"] = next_page_token

            data = self._post("/rest/api/3/search/jql", body)
            issues.extend(data.get("issues", []))

            next_page_token = data.get("nextPageToken")
            if not next_page_token or len(issues) >= limit:
                break

        return issues[:limit]
