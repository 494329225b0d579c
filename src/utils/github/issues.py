import asyncio
import logging
from urllib.parse import quote
from typing import Any, Dict, List, Optional

from src.utils.github.errors import GitHubAPIError, ValidationError
from src.utils.github.rest import RESTClient

logger = logging.getLogger("github-issues")

BULK_CONCURRENCY = 5
BULK_ACTIONS = ("close", "open", "assign", "unassign", "label", "unlabel")


def format_issue(issue: Dict[str, Any]) -> Dict[str, Any]:
    """Reshape a REST issue payload into the fields tools return."""
    milestone = issue.get("milestone")
    return {
        "id": issue.get("id"),
        "node_id": issue.get("node_id"),
        "number": issue.get("number"),
        "title": issue.get("title"),
        "body": issue.get("body"),
        "state": issue.get("state"),
        "state_reason": issue.get("state_reason"),
        "locked": issue.get("locked", False),
        "labels": [
            label["name"] if isinstance(label, dict) else label
            for label in issue.get("labels", [])
        ],
        "assignees": [a.get("login") for a in issue.get("assignees") or []],
        "milestone": (
            {"number": milestone.get("number"), "title": milestone.get("title")}
            if milestone
            else None
        ),
        "comments": issue.get("comments", 0),
        "author": (issue.get("user") or {}).get("login"),
        "url": issue.get("html_url"),
        "created_at": issue.get("created_at"),
        "updated_at": issue.get("updated_at"),
        "closed_at": issue.get("closed_at"),
        "is_pull_request": "pull_request" in issue,
    }


def format_comment(comment: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": comment.get("id"),
        "body": comment.get("body"),
        "author": (comment.get("user") or {}).get("login"),
        "url": comment.get("html_url"),
        "created_at": comment.get("created_at"),
        "updated_at": comment.get("updated_at"),
    }


class IssueRepository:
    """Issue operations on top of the cached REST accessor."""

    def __init__(self, rest: RESTClient, config):
        self.rest = rest
        self.config = config

    def _base(self, owner: Optional[str], repo: Optional[str]) -> str:
        owner, repo = self.config.resolve_repository(owner, repo)
        return f"/repos/{owner}/{repo}"

    def _related(self, base: str) -> List[str]:
        # Issue writes change milestone counters and search results too
        return [f"{base}/milestones", "/search/issues"]

    async def create_issue(
        self,
        title: str,
        body: Optional[str] = None,
        assignees: Optional[List[str]] = None,
        labels: Optional[List[str]] = None,
        milestone: Optional[int] = None,
        owner: Optional[str] = None,
        repo: Optional[str] = None,
    ) -> Dict[str, Any]:
        base = self._base(owner, repo)
        payload = {"title": title}
        if body is not None:
            payload["body"] = body
        if assignees:
            payload["assignees"] = assignees
        if labels:
            payload["labels"] = labels
        if milestone is not None:
            payload["milestone"] = milestone

        issue = await self.rest.post(
            f"{base}/issues", json=payload, invalidate=self._related(base)
        )
        logger.info(f"Created issue #{issue.get('number')} in {base}")
        return format_issue(issue)

    async def get_issue(
        self, issue_number: int, owner: Optional[str] = None, repo: Optional[str] = None
    ) -> Dict[str, Any]:
        base = self._base(owner, repo)
        return format_issue(await self.rest.get(f"{base}/issues/{issue_number}"))

    async def get_issue_node_id(
        self, issue_number: int, owner: Optional[str] = None, repo: Optional[str] = None
    ) -> str:
        issue = await self.get_issue(issue_number, owner, repo)
        if not issue.get("node_id"):
            raise ValidationError(
                f"Issue #{issue_number} has no node id",
                context={"issue_number": issue_number},
            )
        return issue["node_id"]

    async def update_issue(
        self,
        issue_number: int,
        owner: Optional[str] = None,
        repo: Optional[str] = None,
        **changes,
    ) -> Dict[str, Any]:
        base = self._base(owner, repo)
        payload = {k: v for k, v in changes.items() if v is not None}
        if "milestone" in payload and payload["milestone"] == 0:
            payload["milestone"] = None
        if not payload:
            raise ValidationError(
                "No changes supplied for issue update",
                context={"issue_number": issue_number},
            )
        issue = await self.rest.patch(
            f"{base}/issues/{issue_number}",
            json=payload,
            invalidate=self._related(base),
        )
        return format_issue(issue)

    async def list_issues(
        self,
        owner: Optional[str] = None,
        repo: Optional[str] = None,
        state: str = "open",
        assignee: Optional[str] = None,
        labels: Optional[List[str]] = None,
        milestone: Optional[str] = None,
        sort: str = "created",
        direction: str = "desc",
        since: Optional[str] = None,
        per_page: int = 30,
        page: int = 1,
        max_pages: int = 1,
    ) -> Dict[str, Any]:
        base = self._base(owner, repo)
        params = {
            "state": state,
            "assignee": assignee,
            "labels": labels or None,
            "milestone": milestone,
            "sort": sort,
            "direction": direction,
            "since": since,
        }
        result = await self.rest.paginate(
            f"{base}/issues",
            params,
            per_page=per_page,
            max_pages=max_pages,
            start_page=page,
        )
        result.items = [
            format_issue(issue) for issue in result.items if "pull_request" not in issue
        ]
        return result.to_dict()

    async def search_issues(
        self,
        query: str,
        owner: Optional[str] = None,
        repo: Optional[str] = None,
        sort: Optional[str] = None,
        order: str = "desc",
        per_page: int = 30,
        page: int = 1,
        max_pages: int = 1,
    ) -> Dict[str, Any]:
        """
        Searches issues with GitHub search syntax, scoped to the repository
        when one is given or configured.
        """
        owner = owner or self.config.owner
        repo = repo or self.config.repo
        terms = [query]
        if owner and repo and "repo:" not in query:
            terms.append(f"repo:{owner}/{repo}")
        if "is:issue" not in query and "is:pr" not in query:
            terms.append("is:issue")

        result = await self.rest.paginate(
            "/search/issues",
            {"q": " ".join(terms), "sort": sort, "order": order},
            per_page=per_page,
            max_pages=max_pages,
            items_key="items",
            start_page=page,
        )
        result.items = [format_issue(issue) for issue in result.items]
        return result.to_dict()

    async def list_comments(
        self,
        issue_number: int,
        owner: Optional[str] = None,
        repo: Optional[str] = None,
        per_page: int = 30,
        page: int = 1,
        max_pages: int = 1,
    ) -> Dict[str, Any]:
        base = self._base(owner, repo)
        result = await self.rest.paginate(
            f"{base}/issues/{issue_number}/comments",
            per_page=per_page,
            max_pages=max_pages,
            start_page=page,
        )
        result.items = [format_comment(c) for c in result.items]
        return result.to_dict()

    async def create_comment(
        self,
        issue_number: int,
        body: str,
        owner: Optional[str] = None,
        repo: Optional[str] = None,
    ) -> Dict[str, Any]:
        base = self._base(owner, repo)
        comment = await self.rest.post(
            f"{base}/issues/{issue_number}/comments",
            json={"body": body},
            invalidate=self._related(base),
        )
        return format_comment(comment)

    async def list_events(
        self,
        issue_number: int,
        owner: Optional[str] = None,
        repo: Optional[str] = None,
        per_page: int = 30,
        max_pages: int = 1,
    ) -> Dict[str, Any]:
        base = self._base(owner, repo)
        result = await self.rest.paginate(
            f"{base}/issues/{issue_number}/events",
            per_page=per_page,
            max_pages=max_pages,
        )
        result.items = [
            {
                "id": event.get("id"),
                "event": event.get("event"),
                "actor": (event.get("actor") or {}).get("login"),
                "created_at": event.get("created_at"),
            }
            for event in result.items
        ]
        return result.to_dict()

    async def add_assignees(
        self, issue_number: int, assignees: List[str], owner=None, repo=None
    ) -> Dict[str, Any]:
        base = self._base(owner, repo)
        issue = await self.rest.post(
            f"{base}/issues/{issue_number}/assignees",
            json={"assignees": assignees},
            invalidate=self._related(base),
        )
        return format_issue(issue)

    async def remove_assignees(
        self, issue_number: int, assignees: List[str], owner=None, repo=None
    ) -> Dict[str, Any]:
        base = self._base(owner, repo)
        issue = await self.rest.delete(
            f"{base}/issues/{issue_number}/assignees",
            json={"assignees": assignees},
            invalidate=self._related(base),
        )
        return format_issue(issue)

    async def add_labels(
        self, issue_number: int, labels: List[str], owner=None, repo=None
    ) -> List[str]:
        base = self._base(owner, repo)
        result = await self.rest.post(
            f"{base}/issues/{issue_number}/labels",
            json={"labels": labels},
            invalidate=self._related(base),
        )
        return [label.get("name") for label in result or []]

    async def remove_label(
        self, issue_number: int, label: str, owner=None, repo=None
    ) -> List[str]:
        base = self._base(owner, repo)
        result = await self.rest.delete(
            f"{base}/issues/{issue_number}/labels/{quote(label, safe='')}",
            invalidate=self._related(base),
        )
        return [item.get("name") for item in result or []]

    async def lock_issue(
        self,
        issue_number: int,
        lock_reason: Optional[str] = None,
        owner=None,
        repo=None,
    ) -> Dict[str, Any]:
        base = self._base(owner, repo)
        body = {"lock_reason": lock_reason} if lock_reason else None
        await self.rest.put(f"{base}/issues/{issue_number}/lock", json=body)
        return {
            "issue_number": issue_number,
            "locked": True,
            "lock_reason": lock_reason,
        }

    async def unlock_issue(
        self, issue_number: int, owner=None, repo=None
    ) -> Dict[str, Any]:
        base = self._base(owner, repo)
        await self.rest.delete(f"{base}/issues/{issue_number}/lock")
        return {"issue_number": issue_number, "locked": False}

    async def bulk_operation(
        self,
        action: str,
        issue_numbers: List[int],
        assignees: Optional[List[str]] = None,
        labels: Optional[List[str]] = None,
        owner: Optional[str] = None,
        repo: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Applies one action to many issues.

        Failures are collected per issue instead of aborting the whole run.
        """
        if action not in BULK_ACTIONS:
            raise ValidationError(
                f"Unknown bulk action: {action}",
                context={"allowed": list(BULK_ACTIONS)},
            )
        owner, repo = self.config.resolve_repository(owner, repo)
        semaphore = asyncio.Semaphore(BULK_CONCURRENCY)

        async def apply(number: int):
            async with semaphore:
                if action == "close":
                    await self.update_issue(number, owner, repo, state="closed")
                elif action == "open":
                    await self.update_issue(number, owner, repo, state="open")
                elif action == "assign":
                    await self.add_assignees(number, assignees or [], owner, repo)
                elif action == "unassign":
                    await self.remove_assignees(number, assignees or [], owner, repo)
                elif action == "label":
                    await self.add_labels(number, labels or [], owner, repo)
                elif action == "unlabel":
                    for label in labels or []:
                        await self.remove_label(number, label, owner, repo)

        succeeded, failed = [], []
        outcomes = await asyncio.gather(
            *(apply(n) for n in issue_numbers), return_exceptions=True
        )
        for number, outcome in zip(issue_numbers, outcomes):
            if isinstance(outcome, GitHubAPIError):
                failed.append({"issue_number": number, "error": outcome.to_dict()})
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                succeeded.append(number)

        logger.info(
            f"Bulk {action} on {owner}/{repo}: {len(succeeded)} succeeded, "
            f"{len(failed)} failed"
        )
        return {"action": action, "succeeded": succeeded, "failed": failed}
