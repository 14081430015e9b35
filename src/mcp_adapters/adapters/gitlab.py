"""GitLab adapter over the REST API v4.

Requires ``GITLAB_URL`` (e.g. ``https://gitlab.com``) and ``GITLAB_TOKEN``
(a personal access token with ``api`` scope).  Project ids may be numeric
or ``group/project`` paths.
"""

from __future__ import annotations

import json
import logging
from typing import Any
from urllib.parse import quote

import httpx
from mcp.server import Server
from mcp.types import TextContent, Tool

from ..base import (
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

SEARCH_SCOPES = ("projects", "issues", "merge_requests", "milestones", "users")
PROJECT_SCOPES = ("issues", "merge_requests", "milestones")

_ID = {"type": ["integer", "string"], "description": "Numeric id or URL path (group/project)"}
_IID = {"type": ["integer", "string"], "description": "Project-local id (iid)"}


def _build_tools() -> list[Tool]:
    return [
        Tool(
            name="create-issue",
            description="Create an issue in a project.",
            inputSchema={
                "type": "object",
                "properties": {
                    "projectId": _ID,
                    "title": {"type": "string"},
                    "description": {"type": "string"},
                    "labels": {"type": "array", "items": {"type": "string"}},
                    "assigneeId": {"type": "integer"},
                },
                "required": ["projectId", "title"],
            },
        ),
        Tool(
            name="comment-on-issue",
            description="Add a comment to an issue.",
            inputSchema={
                "type": "object",
                "properties": {"projectId": _ID, "issueIid": _IID, "body": {"type": "string"}},
                "required": ["projectId", "issueIid", "body"],
            },
        ),
        Tool(
            name="close-issue",
            description="Close an issue.",
            inputSchema={
                "type": "object",
                "properties": {"projectId": _ID, "issueIid": _IID},
                "required": ["projectId", "issueIid"],
            },
        ),
        Tool(
            name="search-gitlab",
            description=(
                "Search GitLab. issues, merge_requests and milestones can be limited to a project."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "scope": {"type": "string", "enum": list(SEARCH_SCOPES)},
                    "query": {"type": "string"},
                    "projectId": _ID,
                },
                "required": ["scope", "query"],
            },
        ),
        Tool(
            name="create-merge-request",
            description="Open a merge request.",
            inputSchema={
                "type": "object",
                "properties": {
                    "projectId": _ID,
                    "sourceBranch": {"type": "string"},
                    "targetBranch": {"type": "string"},
                    "title": {"type": "string"},
                    "description": {"type": "string"},
                    "removeSourceBranch": {"type": "boolean"},
                    "squash": {"type": "boolean"},
                },
                "required": ["projectId", "sourceBranch", "targetBranch", "title"],
            },
        ),
        Tool(
            name="accept-merge-request",
            description="Merge a merge request.",
            inputSchema={
                "type": "object",
                "properties": {
                    "projectId": _ID,
                    "mergeRequestIid": _IID,
                    "shouldRemoveSourceBranch": {"type": "boolean"},
                    "mergeMessage": {"type": "string"},
                },
                "required": ["projectId", "mergeRequestIid"],
            },
        ),
        Tool(
            name="comment-on-merge-request",
            description="Add a comment to a merge request.",
            inputSchema={
                "type": "object",
                "properties": {"projectId": _ID, "mergeRequestIid": _IID, "body": {"type": "string"}},
                "required": ["projectId", "mergeRequestIid", "body"],
            },
        ),
        Tool(
            name="create-branch",
            description="Create a branch from a branch name or commit SHA.",
            inputSchema={
                "type": "object",
                "properties": {
                    "projectId": _ID,
                    "branchName": {"type": "string"},
                    "ref": {"type": "string"},
                },
                "required": ["projectId", "branchName", "ref"],
            },
        ),
        Tool(
            name="get-pipeline-status",
            description="Status and jobs of a pipeline; the latest one if no id is given.",
            inputSchema={
                "type": "object",
                "properties": {"projectId": _ID, "pipelineId": {"type": "integer"}},
                "required": ["projectId"],
            },
        ),
    ]


TOOLS = _build_tools()

# ---------------------------------------------------------------------------
# API access
# ---------------------------------------------------------------------------


def api_base(url: str) -> str:
    url = url.rstrip("/")
    return url if url.endswith("/api/v4") else f"{url}/api/v4"


def _make_client() -> httpx.AsyncClient:
    env = require_env("GITLAB_URL", "GITLAB_TOKEN")
    return httpx.AsyncClient(
        base_url=api_base(env["GITLAB_URL"]),
        headers={"PRIVATE-TOKEN": env["GITLAB_TOKEN"]},
        timeout=HTTP_TIMEOUT,
    )


def project_path(project_id: Any) -> str:
    return f"/projects/{quote(str(project_id), safe='')}"


async def _api(method: str, path: str, **kwargs: Any) -> Any:
    async with _make_client() as client:
        return await fetch_json(client, method, path, **kwargs)


def _pick(item: dict[str, Any], keys: tuple[str, ...]) -> dict[str, Any]:
    return {k: item.get(k) for k in keys}


def _author(item: dict[str, Any]) -> str:
    return (item.get("author") or {}).get("name") or "Unknown"


def _dump(data: Any) -> str:
    return json.dumps(data, indent=2)


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------


async def _read_projects(params: dict[str, str]) -> str:
    projects = await _api(
        "GET",
        "/projects",
        params={"membership": "true", "order_by": "last_activity_at", "sort": "desc", "per_page": 20},
    )
    keys = ("id", "name", "path_with_namespace", "description", "last_activity_at", "web_url")
    return _dump([_pick(p, keys) for p in projects])


async def _read_project(params: dict[str, str]) -> str:
    return _dump(await _api("GET", project_path(params["projectId"])))


async def _read_issues(params: dict[str, str]) -> str:
    issues = await _api(
        "GET",
        f"{project_path(params['projectId'])}/issues",
        params={"state": "opened", "order_by": "updated_at", "sort": "desc"},
    )
    keys = ("id", "iid", "title", "description", "state", "created_at", "updated_at", "web_url")
    return _dump([{**_pick(i, keys), "author": _author(i)} for i in issues])


async def _read_merge_requests(params: dict[str, str]) -> str:
    mrs = await _api(
        "GET",
        f"{project_path(params['projectId'])}/merge_requests",
        params={"state": "opened", "order_by": "updated_at", "sort": "desc"},
    )
    keys = (
        "id", "iid", "title", "description", "state", "created_at", "updated_at",
        "source_branch", "target_branch", "web_url",
    )
    return _dump([{**_pick(mr, keys), "author": _author(mr)} for mr in mrs])


async def _read_merge_request(params: dict[str, str]) -> str:
    path = f"{project_path(params['projectId'])}/merge_requests/{params['mergeRequestIid']}"
    return _dump(await _api("GET", path))


async def _read_commits(params: dict[str, str]) -> str:
    commits = await _api(
        "GET", f"{project_path(params['projectId'])}/repository/commits", params={"per_page": 20}
    )
    keys = ("id", "short_id", "title", "message", "author_name", "author_email", "created_at", "web_url")
    return _dump([_pick(c, keys) for c in commits])


async def _read_branches(params: dict[str, str]) -> str:
    branches = await _api("GET", f"{project_path(params['projectId'])}/repository/branches")
    keys = (
        "name", "merged", "protected", "default",
        "developers_can_push", "developers_can_merge", "web_url",
    )
    return _dump([_pick(b, keys) for b in branches])


RESOURCES = [
    ResourceRoute("gitlab://projects", "projects", _read_projects, "Your 20 most recently active projects"),
    ResourceRoute("gitlab://projects/{projectId}", "project", _read_project, "Project details"),
    ResourceRoute("gitlab://projects/{projectId}/issues", "issues", _read_issues, "Open issues"),
    ResourceRoute(
        "gitlab://projects/{projectId}/merge_requests",
        "merge-requests",
        _read_merge_requests,
        "Open merge requests",
    ),
    ResourceRoute(
        "gitlab://projects/{projectId}/merge_requests/{mergeRequestIid}",
        "merge-request",
        _read_merge_request,
        "Merge request details",
    ),
    ResourceRoute("gitlab://projects/{projectId}/commits", "commits", _read_commits, "Latest 20 commits"),
    ResourceRoute("gitlab://projects/{projectId}/branches", "branches", _read_branches, "Branches"),
]

# ---------------------------------------------------------------------------
# Individual tool handlers
# ---------------------------------------------------------------------------


async def _handle_create_issue(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "projectId", "title")
    payload: dict[str, Any] = {"title": args["title"], "description": args.get("description", "")}
    if args.get("labels"):
        payload["labels"] = ",".join(args["labels"])
    if args.get("assigneeId") is not None:
        payload["assignee_id"] = args["assigneeId"]
    issue = await _api("POST", f"{project_path(args['projectId'])}/issues", json=payload)
    return text_response(
        f"Issue created successfully!\n\nIssue #{issue['iid']}: {issue['title']}\nURL: {issue['web_url']}"
    )


async def _handle_comment_issue(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "projectId", "issueIid", "body")
    await _api(
        "POST",
        f"{project_path(args['projectId'])}/issues/{args['issueIid']}/notes",
        json={"body": args["body"]},
    )
    return text_response(f"Comment added successfully to issue #{args['issueIid']}!")


async def _handle_close_issue(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "projectId", "issueIid")
    await _api(
        "PUT",
        f"{project_path(args['projectId'])}/issues/{args['issueIid']}",
        json={"state_event": "close"},
    )
    return text_response(f"Issue #{args['issueIid']} closed successfully!")


async def _handle_search(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "scope", "query")
    scope = args["scope"]
    if scope not in SEARCH_SCOPES:
        raise ValidationError(f"scope must be one of {', '.join(SEARCH_SCOPES)}")
    params = {"scope": scope, "search": args["query"]}
    if args.get("projectId") and scope in PROJECT_SCOPES:
        path = f"{project_path(args['projectId'])}/search"
    else:
        path = "/search"
    results = await _api("GET", path, params=params)
    return text_response(f'Search results for "{args["query"]}" in {scope}:\n\n{_dump(results)}')


async def _handle_create_mr(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "projectId", "sourceBranch", "targetBranch", "title")
    payload: dict[str, Any] = {
        "source_branch": args["sourceBranch"],
        "target_branch": args["targetBranch"],
        "title": args["title"],
        "description": args.get("description", ""),
    }
    if args.get("removeSourceBranch") is not None:
        payload["remove_source_branch"] = args["removeSourceBranch"]
    if args.get("squash") is not None:
        payload["squash"] = args["squash"]
    mr = await _api("POST", f"{project_path(args['projectId'])}/merge_requests", json=payload)
    return text_response(
        "Merge request created successfully!\n\n"
        f"Merge Request !{mr['iid']}: {mr['title']}\nURL: {mr['web_url']}"
    )


async def _handle_accept_mr(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "projectId", "mergeRequestIid")
    payload: dict[str, Any] = {}
    if args.get("shouldRemoveSourceBranch") is not None:
        payload["should_remove_source_branch"] = args["shouldRemoveSourceBranch"]
    if args.get("mergeMessage"):
        payload["merge_commit_message"] = args["mergeMessage"]
    await _api(
        "PUT",
        f"{project_path(args['projectId'])}/merge_requests/{args['mergeRequestIid']}/merge",
        json=payload,
    )
    return text_response(
        f"Merge request !{args['mergeRequestIid']} has been accepted and merged successfully!"
    )


async def _handle_comment_mr(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "projectId", "mergeRequestIid", "body")
    await _api(
        "POST",
        f"{project_path(args['projectId'])}/merge_requests/{args['mergeRequestIid']}/notes",
        json={"body": args["body"]},
    )
    return text_response(f"Comment added successfully to merge request !{args['mergeRequestIid']}!")


async def _handle_create_branch(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "projectId", "branchName", "ref")
    branch = await _api(
        "POST",
        f"{project_path(args['projectId'])}/repository/branches",
        params={"branch": args["branchName"], "ref": args["ref"]},
    )
    return text_response(
        f"Branch '{branch['name']}' created successfully from {args['ref']}!\n"
        f"URL: {branch.get('web_url', '')}"
    )


async def _handle_pipeline(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "projectId")
    base = project_path(args["projectId"])
    async with _make_client() as client:
        pipeline_id = args.get("pipelineId")
        if pipeline_id is None:
            latest = await fetch_json(client, "GET", f"{base}/pipelines", params={"per_page": 1})
            if not latest:
                return text_response("No pipelines found for this project.")
            pipeline_id = latest[0]["id"]
        pipeline = await fetch_json(client, "GET", f"{base}/pipelines/{pipeline_id}")
        jobs = await fetch_json(client, "GET", f"{base}/pipelines/{pipeline_id}/jobs")
    summary = [_pick(j, ("name", "stage", "status", "started_at", "finished_at")) for j in jobs]
    return text_response(
        f"Pipeline #{pipeline['id']}\nStatus: {pipeline.get('status')}\nRef: {pipeline.get('ref')}\n"
        f"SHA: {pipeline.get('sha')}\nCreated: {pipeline.get('created_at')}\n\nJobs:\n{_dump(summary)}"
    )


HANDLERS: dict[str, ToolHandler] = {
    "create-issue": _handle_create_issue,
    "comment-on-issue": _handle_comment_issue,
    "close-issue": _handle_close_issue,
    "search-gitlab": _handle_search,
    "create-merge-request": _handle_create_mr,
    "accept-merge-request": _handle_accept_mr,
    "comment-on-merge-request": _handle_comment_mr,
    "create-branch": _handle_create_branch,
    "get-pipeline-status": _handle_pipeline,
}


def create_mcp_server(name: str = "gitlab") -> Server:
    return build_server(name, TOOLS, HANDLERS, RESOURCES)


def main_stdio() -> None:
    configure_logging()
    run_stdio(create_mcp_server())


if __name__ == "__main__":
    main_stdio()
