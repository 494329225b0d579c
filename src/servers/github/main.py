import os
import sys
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

# Add both project root and src directory to Python path
project_root = os.path.abspath(
    os.path.dirname(os.path.dirname(os.path.dirname(os.path.dirname(__file__))))
)
sys.path.insert(0, project_root)
sys.path.insert(0, os.path.join(project_root, "src"))

import mcp.types as types
from mcp.types import AnyUrl, Resource
from mcp.server import NotificationOptions, Server
from mcp.server.models import InitializationOptions
from mcp.server.lowlevel.helper_types import ReadResourceContents

import pydantic

from src.utils.github.client import GitHubClient
from src.utils.github.config import GitHubConfig
from src.utils.github.errors import GitHubAPIError
from src.utils.github.schemas import (
    AddIssueCommentRequest,
    AddProjectItemRequest,
    BulkIssuesRequest,
    BulkMilestonesRequest,
    CreateIssueRequest,
    CreateMilestoneRequest,
    CreateProjectRequest,
    EmptyRequest,
    GetProjectRequest,
    InvalidateCacheRequest,
    IssueAssigneesRequest,
    IssueLabelsRequest,
    IssueNumberRequest,
    ListIssueCommentsRequest,
    ListIssuesRequest,
    ListMilestoneIssuesRequest,
    ListMilestonesRequest,
    ListProjectsRequest,
    LockIssueRequest,
    MilestoneNumberRequest,
    ProjectIdRequest,
    RemoveIssueLabelRequest,
    RemoveProjectItemRequest,
    SearchIssuesRequest,
    SearchMilestonesRequest,
    UpdateIssueRequest,
    UpdateMilestoneRequest,
    UpdateProjectItemFieldRequest,
    UpdateProjectRequest,
)
from src.utils.utils import ToolResponse, error_response, success_response

SERVICE_NAME = Path(__file__).parent.name

RATE_LIMIT_URI = "github://rate-limit"
CACHE_STATS_URI = "github://cache/stats"

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(SERVICE_NAME)

# name -> (description, request model)
TOOLS = {
    # Projects
    "create_project": (
        "Create a GitHub project (v2) for a user or organization",
        CreateProjectRequest,
    ),
    "list_projects": (
        "List projects (v2) of a user or organization, most recently updated first",
        ListProjectsRequest,
    ),
    "get_project": (
        "Get a project with its fields, views and optionally its items",
        GetProjectRequest,
    ),
    "update_project": (
        "Update a project's title, description, readme, state or visibility",
        UpdateProjectRequest,
    ),
    "delete_project": ("Delete a project", ProjectIdRequest),
    "add_project_item": (
        "Add an issue or pull request to a project by node ID or issue number",
        AddProjectItemRequest,
    ),
    "update_project_item_field": (
        "Set a field value on a project item",
        UpdateProjectItemFieldRequest,
    ),
    "remove_project_item": ("Remove an item from a project", RemoveProjectItemRequest),
    # Issues
    "create_issue": ("Create an issue in a repository", CreateIssueRequest),
    "list_issues": (
        "List issues in a repository (pull requests are excluded)",
        ListIssuesRequest,
    ),
    "get_issue": ("Get a single issue", IssueNumberRequest),
    "update_issue": (
        "Update an issue. A milestone of 0 removes the milestone",
        UpdateIssueRequest,
    ),
    "search_issues": (
        "Search issues with GitHub search syntax, scoped to the repository",
        SearchIssuesRequest,
    ),
    "list_issue_comments": ("List comments on an issue", ListIssueCommentsRequest),
    "add_issue_comment": ("Comment on an issue", AddIssueCommentRequest),
    "add_issue_labels": ("Add labels to an issue", IssueLabelsRequest),
    "remove_issue_label": ("Remove a label from an issue", RemoveIssueLabelRequest),
    "add_issue_assignees": ("Assign users to an issue", IssueAssigneesRequest),
    "remove_issue_assignees": (
        "Remove assignees from an issue",
        IssueAssigneesRequest,
    ),
    "lock_issue": ("Lock an issue conversation", LockIssueRequest),
    "unlock_issue": ("Unlock an issue conversation", IssueNumberRequest),
    "bulk_update_issues": (
        "Close, reopen, assign, unassign, label or unlabel many issues at once",
        BulkIssuesRequest,
    ),
    # Milestones
    "create_milestone": ("Create a milestone", CreateMilestoneRequest),
    "list_milestones": ("List milestones in a repository", ListMilestonesRequest),
    "get_milestone": (
        "Get a milestone with completion, timeline and velocity figures",
        MilestoneNumberRequest,
    ),
    "update_milestone": ("Update a milestone", UpdateMilestoneRequest),
    "delete_milestone": ("Delete a milestone", MilestoneNumberRequest),
    "list_milestone_issues": (
        "List the issues assigned to a milestone",
        ListMilestoneIssuesRequest,
    ),
    "search_milestones": (
        "Find milestones whose title or description contains the query",
        SearchMilestonesRequest,
    ),
    "bulk_update_milestones": (
        "Close, reopen, reschedule or delete many milestones at once",
        BulkMilestonesRequest,
    ),
    # Operations
    "get_rate_limit_status": (
        "Fetch the current GitHub rate limit quotas",
        EmptyRequest,
    ),
    "get_cache_stats": ("Show response cache statistics", EmptyRequest),
    "invalidate_cache": (
        "Drop cached responses whose keys match a glob pattern",
        InvalidateCacheRequest,
    ),
}


async def get_credentials(user_id, api_key=None, config: Optional[GitHubConfig] = None):
    """
    Retrieves the GitHub token used for a user's session.

    Args:
        user_id (str): The identifier of the user.
        api_key (Optional[str]): Token passed during server creation.
        config (Optional[GitHubConfig]): Loaded settings, GITHUB_TOKEN fallback.

    Returns:
        str: The token to authenticate with the GitHub API.

    Raises:
        ValueError: If no token is available.
    """
    token = api_key or (config.token if config else os.environ.get("GITHUB_TOKEN"))
    if not token:
        err = (
            f"GitHub token not found for user {user_id}. "
            "Pass an api key or set GITHUB_TOKEN."
        )
        logger.error(err)
        raise ValueError(err)
    return token


async def create_github_client(user_id, api_key=None):
    """
    Creates a GitHub client configured from the environment.

    Args:
        user_id (str): The user identifier.
        api_key (Optional[str]): Optional token.

    Returns:
        GitHubClient: Client with caching, retries and batching wired in.
    """
    config = GitHubConfig.from_env()
    token = await get_credentials(user_id, api_key, config)
    logging.getLogger().setLevel(config.log_level)
    return GitHubClient(config.with_token(token))


def map_exception(error: Exception) -> ToolResponse:
    """Converts an exception raised by a tool into an error envelope."""
    if isinstance(error, GitHubAPIError):
        return error_response(error.message, error.code, error.context)
    if isinstance(error, pydantic.ValidationError):
        return error_response(
            "Invalid arguments",
            "INVALID_ARGUMENTS",
            {"errors": json.loads(error.json(include_url=False))},
        )
    if isinstance(error, ValueError):
        return error_response(str(error), "INVALID_ARGUMENTS")
    logger.exception(f"Unexpected error: {error}")
    return error_response(str(error) or type(error).__name__, "INTERNAL_ERROR")


async def execute_tool(
    name: str, arguments: Optional[Dict[str, Any]], github: GitHubClient
):
    """
    Validates the arguments of a tool call and runs it against the client.

    Returns:
        The tool's result data.

    Raises:
        ValueError: If an unknown tool name is provided.
    """
    if name not in TOOLS:
        raise ValueError(f"Unknown tool: {name}")

    _, model = TOOLS[name]
    params = model.model_validate(arguments or {})
    repo = {
        "owner": getattr(params, "owner", None),
        "repo": getattr(params, "repo", None),
    }

    # Projects
    if name == "create_project":
        return await github.projects.create_project(
            params.title,
            owner=params.owner,
            short_description=params.short_description,
            visibility=params.visibility,
        )
    elif name == "list_projects":
        return await github.projects.list_projects(
            owner=params.owner,
            state=params.state,
            query=params.query,
            first=params.first,
            after=params.after,
        )
    elif name == "get_project":
        return await github.projects.get_project(
            params.project_id,
            include_items=params.include_items,
            items_first=params.items_first,
        )
    elif name == "update_project":
        return await github.projects.update_project(
            params.project_id,
            title=params.title,
            short_description=params.short_description,
            readme=params.readme,
            state=params.state,
            visibility=params.visibility,
        )
    elif name == "delete_project":
        return await github.projects.delete_project(params.project_id)
    elif name == "add_project_item":
        return await github.projects.add_item(
            params.project_id,
            content_id=params.content_id,
            issue_number=params.issue_number,
            **repo,
        )
    elif name == "update_project_item_field":
        return await github.projects.update_item_field(
            params.project_id,
            params.item_id,
            params.field_id,
            params.value_type,
            params.value,
        )
    elif name == "remove_project_item":
        return await github.projects.remove_item(params.project_id, params.item_id)

    # Issues
    elif name == "create_issue":
        return await github.issues.create_issue(
            params.title,
            body=params.body,
            assignees=params.assignees,
            labels=params.labels,
            milestone=params.milestone,
            **repo,
        )
    elif name == "list_issues":
        return await github.issues.list_issues(
            state=params.state,
            assignee=params.assignee,
            labels=params.labels,
            milestone=params.milestone,
            sort=params.sort,
            direction=params.direction,
            since=params.since,
            per_page=params.per_page,
            page=params.page,
            max_pages=params.max_pages,
            **repo,
        )
    elif name == "get_issue":
        return await github.issues.get_issue(params.issue_number, **repo)
    elif name == "update_issue":
        changes = params.model_dump(
            exclude={"issue_number", "owner", "repo"}, exclude_none=True
        )
        return await github.issues.update_issue(params.issue_number, **repo, **changes)
    elif name == "search_issues":
        return await github.issues.search_issues(
            params.query,
            sort=params.sort,
            order=params.order,
            per_page=params.per_page,
            page=params.page,
            max_pages=params.max_pages,
            **repo,
        )
    elif name == "list_issue_comments":
        return await github.issues.list_comments(
            params.issue_number,
            per_page=params.per_page,
            page=params.page,
            max_pages=params.max_pages,
            **repo,
        )
    elif name == "add_issue_comment":
        return await github.issues.create_comment(
            params.issue_number, params.body, **repo
        )
    elif name == "add_issue_labels":
        labels = await github.issues.add_labels(
            params.issue_number, params.labels, **repo
        )
        return {"issue_number": params.issue_number, "labels": labels}
    elif name == "remove_issue_label":
        labels = await github.issues.remove_label(
            params.issue_number, params.label, **repo
        )
        return {"issue_number": params.issue_number, "labels": labels}
    elif name == "add_issue_assignees":
        return await github.issues.add_assignees(
            params.issue_number, params.assignees, **repo
        )
    elif name == "remove_issue_assignees":
        return await github.issues.remove_assignees(
            params.issue_number, params.assignees, **repo
        )
    elif name == "lock_issue":
        return await github.issues.lock_issue(
            params.issue_number, lock_reason=params.lock_reason, **repo
        )
    elif name == "unlock_issue":
        return await github.issues.unlock_issue(params.issue_number, **repo)
    elif name == "bulk_update_issues":
        return await github.issues.bulk_operation(
            params.action,
            params.issue_numbers,
            assignees=params.assignees,
            labels=params.labels,
            **repo,
        )

    # Milestones
    elif name == "create_milestone":
        return await github.milestones.create_milestone(
            params.title,
            description=params.description,
            due_on=params.due_on,
            state=params.state,
            **repo,
        )
    elif name == "list_milestones":
        return await github.milestones.list_milestones(
            state=params.state,
            sort=params.sort,
            direction=params.direction,
            per_page=params.per_page,
            page=params.page,
            max_pages=params.max_pages,
            **repo,
        )
    elif name == "get_milestone":
        return await github.milestones.get_progress(params.milestone_number, **repo)
    elif name == "update_milestone":
        changes = params.model_dump(
            exclude={"milestone_number", "owner", "repo"}, exclude_none=True
        )
        return await github.milestones.update_milestone(
            params.milestone_number, **repo, **changes
        )
    elif name == "delete_milestone":
        return await github.milestones.delete_milestone(params.milestone_number, **repo)
    elif name == "list_milestone_issues":
        return await github.milestones.list_milestone_issues(
            params.milestone_number,
            state=params.state,
            per_page=params.per_page,
            page=params.page,
            max_pages=params.max_pages,
            **repo,
        )
    elif name == "search_milestones":
        return await github.milestones.search_milestones(
            params.query, state=params.state, **repo
        )
    elif name == "bulk_update_milestones":
        return await github.milestones.bulk_operation(
            params.action, params.milestone_numbers, due_on=params.due_on, **repo
        )

    # Operations
    elif name == "get_rate_limit_status":
        status = await github.rest.get_rate_limit()
        status["approaching_limit"] = github.rest.is_approaching_rate_limit()
        return status
    elif name == "get_cache_stats":
        return github.cache.stats().to_dict()
    elif name == "invalidate_cache":
        removed = github.cache.invalidate(params.pattern)
        return {"pattern": params.pattern, "removed": removed}

    raise ValueError(f"Unknown tool: {name}")


async def run_tool(
    name: str, arguments: Optional[Dict[str, Any]], github: GitHubClient
) -> ToolResponse:
    """Runs a tool and wraps its result or error in a ToolResponse envelope."""
    try:
        return success_response(await execute_tool(name, arguments, github))
    except Exception as e:
        logger.error(f"Error calling tool {name}: {e}")
        return map_exception(e)


def create_server(user_id, api_key=None):
    """
    Initializes and configures a GitHub projects MCP server instance.

    Args:
        user_id (str): The unique user identifier for session context.
        api_key (Optional[str]): Optional GitHub token for the session.

    Returns:
        Server: Configured server instance with all GitHub tools registered.
    """
    server = Server("github-server")
    server.user_id = user_id
    server.api_key = api_key
    server.github = None

    async def get_github():
        # One client per server instance so the cache survives across calls
        if server.github is None:
            server.github = await create_github_client(server.user_id, server.api_key)
        return server.github

    server.get_github = get_github

    @server.list_resources()
    async def handle_list_resources(cursor: Optional[str] = None) -> list[Resource]:
        """List the rate limit and cache status resources"""
        logger.info(f"Listing resources for user: {user_id}")
        return [
            Resource(
                uri=RATE_LIMIT_URI,
                mimeType="application/json",
                name="GitHub rate limits",
                description="Last observed quota for each GitHub API surface",
            ),
            Resource(
                uri=CACHE_STATS_URI,
                mimeType="application/json",
                name="Cache statistics",
                description="Hit rate, size and evictions of the response cache",
            ),
        ]

    @server.read_resource()
    async def handle_read_resource(uri: AnyUrl) -> Iterable[ReadResourceContents]:
        """Read a status resource"""
        logger.info(f"Reading resource: {uri} for user: {user_id}")

        github = await get_github()
        uri_str = str(uri)
        if uri_str == RATE_LIMIT_URI:
            result = github.rate_limits.status()
        elif uri_str == CACHE_STATS_URI:
            result = github.cache.stats().to_dict()
        else:
            raise ValueError(f"Unsupported resource path: {uri_str}")

        return [
            ReadResourceContents(
                content=json.dumps(result, indent=2), mime_type="application/json"
            )
        ]

    @server.list_tools()
    async def handle_list_tools() -> list[types.Tool]:
        """
        Lists all available tools for GitHub projects, issues and milestones.

        Returns:
            list[types.Tool]: Tool metadata with JSON schemas generated from
            the request models.
        """
        logger.info(f"Listing tools for user: {user_id}")
        return [
            types.Tool(
                name=name,
                description=description,
                inputSchema=model.model_json_schema(),
            )
            for name, (description, model) in TOOLS.items()
        ]

    @server.call_tool()
    async def handle_call_tool(name: str, arguments: dict | None):
        """
        Dispatches a tool call to the GitHub client.

        Args:
            name (str): The tool name to execute.
            arguments (dict | None): Arguments to pass to the tool.

        Returns:
            list[types.TextContent]: The JSON encoded ToolResponse envelope.

        Raises:
            ValueError: If an unknown tool name is provided.
        """
        logger.info(f"User {user_id} calling tool: {name} with args: {arguments}")

        if name not in TOOLS:
            raise ValueError(f"Unknown tool: {name}")

        try:
            github = await get_github()
        except ValueError as e:
            response = map_exception(e)
        else:
            response = await run_tool(name, arguments, github)

        return [
            types.TextContent(
                type="text", text=json.dumps(response, indent=2, default=str)
            )
        ]

    return server


server = create_server


def get_initialization_options(server_instance: Server) -> InitializationOptions:
    """
    Get the initialization options for the server

    Args:
        server_instance (Server): The server instance.

    Returns:
        InitializationOptions: The initialization configuration block.
    """
    return InitializationOptions(
        server_name="github-server",
        server_version="1.0.0",
        capabilities=server_instance.get_capabilities(
            notification_options=NotificationOptions(),
            experimental_capabilities={},
        ),
    )


if __name__ == "__main__":
    print("Usage:")
    print("  python src/servers/local.py --server github")
    print("  python src/servers/remote.py")
    print("Set GITHUB_TOKEN (and optionally GITHUB_OWNER, GITHUB_REPO) first.")
