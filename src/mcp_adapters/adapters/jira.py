"""Jira Cloud adapter over the REST API v3.

Requires ``JIRA_BASE_URL`` (``https://<site>.atlassian.net``), ``JIRA_EMAIL``
and ``JIRA_API_TOKEN``.  Rich text goes to Jira as Atlassian Document
Format (ADF) and comes back flattened to plain text.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from mcp.server import Server
from mcp.types import TextContent, Tool

from ..base import (
    PromptRoute,
    ResourceRoute,
    ToolHandler,
    build_server,
    configure_logging,
    fetch_json,
    require_args,
    require_env,
    run_stdio,
    text_response,
)
from ..config import HTTP_TIMEOUT
from ..errors import ValidationError

logger = logging.getLogger(__name__)

PRIORITIES = ("Highest", "High", "Medium", "Low", "Lowest")
SEARCH_LIMIT = 20

_TASK_KEY = {"type": "string", "description": "Issue key, e.g. TEAM-42"}


def _build_tools() -> list[Tool]:
    return [
        Tool(
            name="create-task",
            description="Create a Task issue in a project.",
            inputSchema={
                "type": "object",
                "properties": {
                    "projectKey": {"type": "string"},
                    "summary": {"type": "string"},
                    "description": {"type": "string"},
                    "assignee": {"type": "string", "description": "Atlassian account id"},
                    "priority": {"type": "string", "enum": list(PRIORITIES)},
                },
                "required": ["projectKey", "summary"],
            },
        ),
        Tool(
            name="update-task-status",
            description="Move a task through the workflow by transition or target status name.",
            inputSchema={
                "type": "object",
                "properties": {"taskKey": _TASK_KEY, "status": {"type": "string"}},
                "required": ["taskKey", "status"],
            },
        ),
        Tool(
            name="assign-task",
            description="Assign a task to an account id, or unassign it when no assignee is given.",
            inputSchema={
                "type": "object",
                "properties": {"taskKey": _TASK_KEY, "assignee": {"type": "string"}},
                "required": ["taskKey"],
            },
        ),
        Tool(
            name="add-comment",
            description="Comment on a task.",
            inputSchema={
                "type": "object",
                "properties": {"taskKey": _TASK_KEY, "comment": {"type": "string"}},
                "required": ["taskKey", "comment"],
            },
        ),
        Tool(
            name="log-work",
            description="Log time spent on a task, e.g. '1h 30m' or '2d'.",
            inputSchema={
                "type": "object",
                "properties": {
                    "taskKey": _TASK_KEY,
                    "timeSpent": {"type": "string"},
                    "comment": {"type": "string"},
                },
                "required": ["taskKey", "timeSpent"],
            },
        ),
    ]


TOOLS = _build_tools()

# ---------------------------------------------------------------------------
# API access
# ---------------------------------------------------------------------------


def _make_client() -> httpx.AsyncClient:
    env = require_env("JIRA_BASE_URL", "JIRA_EMAIL", "JIRA_API_TOKEN")
    return httpx.AsyncClient(
        base_url=f"{env['JIRA_BASE_URL'].rstrip('/')}/rest/api/3",
        auth=(env["JIRA_EMAIL"], env["JIRA_API_TOKEN"]),
        headers={"Accept": "application/json"},
        timeout=HTTP_TIMEOUT,
    )


async def _api(method: str, path: str, **kwargs: Any) -> Any:
    async with _make_client() as client:
        return await fetch_json(client, method, path, **kwargs)


async def _search(jql: str, fields: list[str]) -> dict[str, Any]:
    return await _api(
        "POST", "/search", json={"jql": jql, "maxResults": SEARCH_LIMIT, "fields": fields}
    ) or {}


def jql_string(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


# ---------------------------------------------------------------------------
# Atlassian Document Format
# ---------------------------------------------------------------------------


def to_adf(text: str) -> dict[str, Any]:
    """Wrap plain text as an ADF document, one paragraph per blank-line block."""
    paragraphs = [p for p in text.split("\n\n") if p.strip()] or [text]
    return {
        "type": "doc",
        "version": 1,
        "content": [
            {"type": "paragraph", "content": [{"type": "text", "text": p}]} for p in paragraphs
        ],
    }


def adf_to_text(doc: Any) -> str:
    """Flatten an ADF document to plain text."""
    if isinstance(doc, str):
        return doc
    if not isinstance(doc, dict) or not doc.get("content"):
        return ""

    def walk(nodes: list[dict[str, Any]]) -> str:
        out = ""
        for node in nodes:
            if node.get("type") == "hardBreak":
                out += "\n"
            if node.get("text"):
                out += node["text"]
            if node.get("content"):
                out += walk(node["content"])
            if node.get("type") in ("paragraph", "heading"):
                out += "\n\n"
            elif node.get("type") == "listItem":
                out += "\n"
        return out

    return walk(doc["content"]).strip()


def _field_name(fields: dict[str, Any], key: str, attr: str = "name", default: str = "Unknown") -> str:
    return (fields.get(key) or {}).get(attr) or default


def format_task(issue: dict[str, Any]) -> str:
    fields = issue.get("fields") or {}
    description = adf_to_text(fields.get("description")) or "No description"
    lines = [
        f"Task: {issue.get('key')} - {fields.get('summary')}",
        f"Status: {_field_name(fields, 'status')}",
        f"Priority: {_field_name(fields, 'priority', default='Not set')}",
        f"Assignee: {_field_name(fields, 'assignee', 'displayName', 'Unassigned')}",
        f"Created: {fields.get('created') or 'Unknown'}",
        f"Updated: {fields.get('updated') or 'Unknown'}",
        f"Due Date: {fields.get('duedate') or 'Not set'}",
        "Description:",
        description,
    ]
    tracking = fields.get("timetracking")
    if tracking:
        lines += [
            "Time Tracking:",
            f"Original Estimate: {tracking.get('originalEstimate') or 'Not set'}",
            f"Remaining: {tracking.get('remainingEstimate') or 'Not set'}",
            f"Time Spent: {tracking.get('timeSpent') or 'Not set'}",
        ]
    return "\n".join(lines)


def _task_line(issue: dict[str, Any], with_assignee: bool = False, with_project: bool = False) -> str:
    fields = issue.get("fields") or {}
    line = f"- {issue.get('key')}: {fields.get('summary')} ({_field_name(fields, 'status')})"
    if with_assignee and fields.get("assignee"):
        line += f" - Assigned to: {fields['assignee'].get('displayName')}"
    if with_project and fields.get("project"):
        line += f" - Project: {fields['project'].get('name')}"
    return line


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------


async def _read_projects(params: dict[str, str]) -> str:
    projects = await _api("GET", "/project") or []
    body = "\n\n".join(
        f"{p['key']}: {p['name']}" + (f" - {p['description']}" if p.get("description") else "")
        for p in projects
    )
    return f"# Jira Projects\n\n{body}"


async def _read_project_tasks(params: dict[str, str]) -> str:
    key = params["projectKey"]
    result = await _search(
        f"project = {jql_string(key)} ORDER BY updated DESC",
        ["summary", "status", "assignee", "priority"],
    )
    issues = result.get("issues") or []
    if not issues:
        return f"No tasks found for project {key}"
    body = "\n".join(_task_line(i, with_assignee=True) for i in issues)
    return f"# Tasks for {key}\n\n{body}\n\nTotal tasks: {result.get('total', len(issues))}"


async def _read_task(params: dict[str, str]) -> str:
    key = params["taskKey"]
    issue = await _api("GET", f"/issue/{key}")
    return f"# Task Details: {key}\n\n{format_task(issue)}"


async def _read_user_tasks(params: dict[str, str]) -> str:
    user = params["username"]
    result = await _search(
        f"assignee = {jql_string(user)} ORDER BY updated DESC",
        ["summary", "status", "priority", "project"],
    )
    issues = result.get("issues") or []
    if not issues:
        return f"No tasks found for user {user}"
    body = "\n".join(_task_line(i, with_project=True) for i in issues)
    return f"# Tasks assigned to {user}\n\n{body}\n\nTotal tasks: {result.get('total', len(issues))}"


async def _read_search(params: dict[str, str]) -> str:
    query = params["query"]
    result = await _search(
        f"text ~ {jql_string(query)} ORDER BY updated DESC",
        ["summary", "status", "assignee", "priority", "project"],
    )
    issues = result.get("issues") or []
    if not issues:
        return f'No tasks found matching "{query}"'
    body = "\n".join(_task_line(i, with_project=True) for i in issues)
    return (
        f'# Search results for "{query}"\n\n{body}\n\n'
        f"Total tasks found: {result.get('total', len(issues))}"
    )


RESOURCES = [
    ResourceRoute("jira://projects", "projects", _read_projects, "All projects", "text/markdown"),
    ResourceRoute(
        "jira://projects/{projectKey}/tasks", "project-tasks", _read_project_tasks,
        "Latest tasks of a project", "text/markdown",
    ),
    ResourceRoute("jira://tasks/{taskKey}", "task-details", _read_task, "One task", "text/markdown"),
    ResourceRoute(
        "jira://users/{username}/tasks", "user-tasks", _read_user_tasks,
        "Tasks assigned to a user", "text/markdown",
    ),
    ResourceRoute(
        "jira://search/{query}", "search-tasks", _read_search, "Full-text task search", "text/markdown"
    ),
]

# ---------------------------------------------------------------------------
# Individual tool handlers
# ---------------------------------------------------------------------------


async def _handle_create(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "projectKey", "summary")
    fields: dict[str, Any] = {
        "project": {"key": args["projectKey"]},
        "summary": args["summary"],
        "issuetype": {"name": "Task"},
    }
    if args.get("description"):
        fields["description"] = to_adf(args["description"])
    if args.get("assignee"):
        fields["assignee"] = {"accountId": args["assignee"]}
    if args.get("priority"):
        if args["priority"] not in PRIORITIES:
            raise ValidationError(f"priority must be one of {', '.join(PRIORITIES)}")
        fields["priority"] = {"name": args["priority"]}
    created = await _api("POST", "/issue", json={"fields": fields})
    return text_response(
        f"Task created successfully!\nTask Key: {created['key']}\n"
        f"Project: {args['projectKey']}\nSummary: {args['summary']}"
    )


def find_transition(transitions: list[dict[str, Any]], status: str) -> dict[str, Any] | None:
    wanted = status.strip().lower()
    for t in transitions:
        if t.get("name", "").lower() == wanted or (t.get("to") or {}).get("name", "").lower() == wanted:
            return t
    return None


async def _handle_status(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "taskKey", "status")
    key, status = args["taskKey"], args["status"]
    async with _make_client() as client:
        available = await fetch_json(client, "GET", f"/issue/{key}/transitions")
        transitions = (available or {}).get("transitions") or []
        transition = find_transition(transitions, status)
        if transition is None:
            names = ", ".join(t.get("name", "?") for t in transitions) or "none"
            raise ValidationError(
                f'Status "{status}" is not a valid transition for task {key}. '
                f"Available transitions: {names}"
            )
        await fetch_json(
            client, "POST", f"/issue/{key}/transitions", json={"transition": {"id": transition["id"]}}
        )
    return text_response(f'Task {key} status updated to "{status}" successfully!')


async def _handle_assign(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "taskKey")
    key, assignee = args["taskKey"], args.get("assignee") or None
    await _api("PUT", f"/issue/{key}/assignee", json={"accountId": assignee})
    action = f"assigned to {assignee}" if assignee else "unassigned"
    return text_response(f"Task {key} {action} successfully!")


async def _handle_comment(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "taskKey", "comment")
    await _api("POST", f"/issue/{args['taskKey']}/comment", json={"body": to_adf(args["comment"])})
    return text_response(f"Comment added to task {args['taskKey']} successfully!")


async def _handle_log_work(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "taskKey", "timeSpent")
    payload: dict[str, Any] = {"timeSpent": args["timeSpent"]}
    if args.get("comment"):
        payload["comment"] = to_adf(args["comment"])
    await _api("POST", f"/issue/{args['taskKey']}/worklog", json=payload)
    suffix = f' with comment: "{args["comment"]}"' if args.get("comment") else ""
    return text_response(f"Work logged on task {args['taskKey']}: {args['timeSpent']}{suffix}")


HANDLERS: dict[str, ToolHandler] = {
    "create-task": _handle_create,
    "update-task-status": _handle_status,
    "assign-task": _handle_assign,
    "add-comment": _handle_comment,
    "log-work": _handle_log_work,
}

# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------


def _task_from_description(args: dict[str, str]) -> str:
    return (
        f'I need to create a new Jira task based on this description: "{args["description"]}".\n'
        "Please help me write a well-structured task with:\n"
        "1. A clear, concise summary\n"
        "2. A description with context and acceptance criteria where possible\n"
        "3. An appropriate priority\n"
        "4. A suggested assignee, if one is obvious\n"
        "5. The project it belongs to\n"
        "Then create it with the create-task tool."
    )


def _project_status(args: dict[str, str]) -> str:
    return (
        f"I need an analysis of the current status of project {args['projectKey']}.\n"
        f"Read jira://projects/{args['projectKey']}/tasks and:\n"
        "1. Count the tasks in each status\n"
        "2. Identify high-priority tasks that may be at risk\n"
        "3. Point out tasks that look blocked\n"
        "4. Recommend what the team should focus on next"
    )


def _user_workload(args: dict[str, str]) -> str:
    return (
        f"Summarize the current workload of {args['username']}.\n"
        f"Read jira://users/{args['username']}/tasks and:\n"
        "1. Group the tasks by status and project\n"
        "2. Highlight high-priority or overdue work\n"
        "3. Say whether the workload looks balanced and suggest adjustments"
    )


PROMPTS = [
    PromptRoute(
        "create-task-from-description",
        "Turn a free-form description into a well-formed Jira task",
        _task_from_description,
        [("description", "What the task is about", True)],
    ),
    PromptRoute(
        "analyze-project-status",
        "Status analysis of a project's tasks",
        _project_status,
        [("projectKey", "Project key, e.g. TEAM", True)],
    ),
    PromptRoute(
        "summarize-user-workload",
        "Summary of the tasks assigned to a user",
        _user_workload,
        [("username", "Account id or user name", True)],
    ),
]


def create_mcp_server(name: str = "jira") -> Server:
    return build_server(name, TOOLS, HANDLERS, RESOURCES, PROMPTS)


def main_stdio() -> None:
    configure_logging()
    run_stdio(create_mcp_server())


if __name__ == "__main__":
    main_stdio()
