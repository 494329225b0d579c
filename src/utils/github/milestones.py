import math
import time
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from src.utils.github.cache import cached
from src.utils.github.errors import GitHubAPIError, ValidationError
from src.utils.github.issues import format_issue
from src.utils.github.rest import KEY_PREFIX, RESTClient
from src.utils.github.schemas import DATE_PATTERN

logger = logging.getLogger("github-milestones")

BULK_CONCURRENCY = 3
BULK_ACTIONS = ("close", "open", "update_due_date", "delete")
DUE_SOON_DAYS = 7
SECONDS_PER_DAY = 86400
# Progress lives in the REST key space so writes to the milestones family,
# including issue writes, drop it with the cached milestone reads
PROGRESS_PREFIX = f"{KEY_PREFIX}:PROGRESS"


def to_github_date(value: Optional[str]) -> Optional[str]:
    """
    Normalizes a due date to the ISO timestamp GitHub stores.

    Raises:
        ValidationError: If the value is neither YYYY-MM-DD nor ISO 8601.
    """
    if value is None:
        return None
    if not DATE_PATTERN.match(value):
        raise ValidationError(
            f"Invalid date: {value}. Use YYYY-MM-DD or YYYY-MM-DDTHH:MM:SSZ",
            context={"value": value},
        )
    if len(value) == 10:
        return f"{value}T00:00:00Z"
    return value if value.endswith("Z") else f"{value}Z"


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def format_milestone(milestone: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": milestone.get("id"),
        "number": milestone.get("number"),
        "title": milestone.get("title"),
        "description": milestone.get("description"),
        "state": milestone.get("state"),
        "due_on": milestone.get("due_on"),
        "open_issues": milestone.get("open_issues", 0),
        "closed_issues": milestone.get("closed_issues", 0),
        "url": milestone.get("html_url"),
        "created_at": milestone.get("created_at"),
        "updated_at": milestone.get("updated_at"),
        "closed_at": milestone.get("closed_at"),
    }


def compute_progress(milestone: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    """
    Completion, deadline and velocity figures for a milestone.

    Velocity is closed issues per day since the milestone was created and
    drives the estimated completion date.
    """
    open_issues = milestone.get("open_issues", 0) or 0
    closed_issues = milestone.get("closed_issues", 0) or 0
    total = open_issues + closed_issues
    percentage = round(closed_issues / total * 100) if total else 0

    due = _parse_iso(milestone.get("due_on"))
    days_until_due = None
    is_overdue = False
    if due is not None:
        days_until_due = math.ceil((due - now).total_seconds() / SECONDS_PER_DAY)
        is_overdue = now > due and milestone.get("state") == "open"

    if milestone.get("state") == "closed":
        status = "completed"
    elif is_overdue:
        status = "overdue"
    elif days_until_due is not None and days_until_due <= DUE_SOON_DAYS:
        status = "due_soon"
    else:
        status = "on_track"

    created = _parse_iso(milestone.get("created_at"))
    issues_per_day = 0.0
    estimated_completion = None
    if created is not None:
        elapsed_days = max((now - created).total_seconds() / SECONDS_PER_DAY, 1.0)
        issues_per_day = closed_issues / elapsed_days
        if open_issues == 0:
            estimated_completion = now.isoformat()
        elif issues_per_day > 0:
            remaining_seconds = open_issues / issues_per_day * SECONDS_PER_DAY
            estimated_completion = datetime.fromtimestamp(
                now.timestamp() + remaining_seconds, tz=timezone.utc
            ).isoformat()

    return {
        "total": total,
        "completed": closed_issues,
        "remaining": open_issues,
        "percentage": percentage,
        "timeline": {
            "due_on": milestone.get("due_on"),
            "days_until_due": days_until_due,
            "is_overdue": is_overdue,
            "status": status,
        },
        "velocity": {
            "issues_per_day": round(issues_per_day, 3),
            "estimated_completion_date": estimated_completion,
        },
    }


class MilestoneRepository:
    """Milestone operations on top of the cached REST accessor."""

    def __init__(
        self, rest: RESTClient, config, clock: Callable[[], float] = time.time
    ):
        self.rest = rest
        self.config = config
        self.cache = rest.cache
        self.clock = clock

    def _base(self, owner: Optional[str], repo: Optional[str]) -> str:
        owner, repo = self.config.resolve_repository(owner, repo)
        return f"/repos/{owner}/{repo}"

    def _invalidate_progress(self, base: str):
        self.cache.invalidate(f"{PROGRESS_PREFIX}:{base}/milestones/*")

    async def create_milestone(
        self,
        title: str,
        description: Optional[str] = None,
        due_on: Optional[str] = None,
        state: str = "open",
        owner: Optional[str] = None,
        repo: Optional[str] = None,
    ) -> Dict[str, Any]:
        base = self._base(owner, repo)
        payload = {"title": title, "state": state}
        if description is not None:
            payload["description"] = description
        if due_on is not None:
            payload["due_on"] = to_github_date(due_on)
        milestone = await self.rest.post(f"{base}/milestones", json=payload)
        logger.info(f"Created milestone #{milestone.get('number')} in {base}")
        return format_milestone(milestone)

    async def get_milestone(
        self,
        milestone_number: int,
        owner: Optional[str] = None,
        repo: Optional[str] = None,
    ) -> Dict[str, Any]:
        base = self._base(owner, repo)
        milestone = await self.rest.get(f"{base}/milestones/{milestone_number}")
        return format_milestone(milestone)

    async def update_milestone(
        self,
        milestone_number: int,
        owner: Optional[str] = None,
        repo: Optional[str] = None,
        **changes,
    ) -> Dict[str, Any]:
        base = self._base(owner, repo)
        payload = {k: v for k, v in changes.items() if v is not None}
        if "due_on" in payload:
            payload["due_on"] = to_github_date(payload["due_on"])
        if not payload:
            raise ValidationError(
                "No changes supplied for milestone update",
                context={"milestone_number": milestone_number},
            )
        milestone = await self.rest.patch(
            f"{base}/milestones/{milestone_number}",
            json=payload,
            invalidate=[f"{base}/issues"],
        )
        self._invalidate_progress(base)
        return format_milestone(milestone)

    async def delete_milestone(
        self,
        milestone_number: int,
        owner: Optional[str] = None,
        repo: Optional[str] = None,
    ) -> Dict[str, Any]:
        base = self._base(owner, repo)
        await self.rest.delete(
            f"{base}/milestones/{milestone_number}", invalidate=[f"{base}/issues"]
        )
        self._invalidate_progress(base)
        return {"milestone_number": milestone_number, "deleted": True}

    async def list_milestones(
        self,
        owner: Optional[str] = None,
        repo: Optional[str] = None,
        state: str = "open",
        sort: str = "due_on",
        direction: str = "asc",
        per_page: int = 30,
        page: int = 1,
        max_pages: int = 1,
    ) -> Dict[str, Any]:
        base = self._base(owner, repo)
        result = await self.rest.paginate(
            f"{base}/milestones",
            {"state": state, "sort": sort, "direction": direction},
            per_page=per_page,
            max_pages=max_pages,
            start_page=page,
        )
        result.items = [format_milestone(m) for m in result.items]
        return result.to_dict()

    async def list_milestone_issues(
        self,
        milestone_number: int,
        owner: Optional[str] = None,
        repo: Optional[str] = None,
        state: str = "all",
        per_page: int = 30,
        page: int = 1,
        max_pages: int = 1,
    ) -> Dict[str, Any]:
        base = self._base(owner, repo)
        result = await self.rest.paginate(
            f"{base}/issues",
            {"milestone": milestone_number, "state": state},
            per_page=per_page,
            max_pages=max_pages,
            start_page=page,
        )
        result.items = [
            format_issue(i) for i in result.items if "pull_request" not in i
        ]
        return result.to_dict()

    @cached(
        lambda milestone_number, owner=None, repo=None: (
            f"{PROGRESS_PREFIX}:/repos/{owner}/{repo}/milestones/{milestone_number}"
        ),
        ttl=60.0,
    )
    async def _progress(self, milestone_number: int, owner=None, repo=None):
        milestone = await self.rest.get(
            f"/repos/{owner}/{repo}/milestones/{milestone_number}"
        )
        now = datetime.fromtimestamp(self.clock(), tz=timezone.utc)
        return {
            "milestone": format_milestone(milestone),
            "progress": compute_progress(milestone, now),
        }

    async def get_progress(
        self,
        milestone_number: int,
        owner: Optional[str] = None,
        repo: Optional[str] = None,
    ) -> Dict[str, Any]:
        owner, repo = self.config.resolve_repository(owner, repo)
        return await self._progress(milestone_number, owner=owner, repo=repo)

    async def search_milestones(
        self,
        query: str,
        owner: Optional[str] = None,
        repo: Optional[str] = None,
        state: str = "all",
    ) -> List[Dict[str, Any]]:
        """Case-insensitive substring match on titles and descriptions."""
        listing = await self.list_milestones(
            owner, repo, state=state, per_page=100, max_pages=5
        )
        needle = query.lower()
        return [
            m
            for m in listing["items"]
            if needle in (m.get("title") or "").lower()
            or needle in (m.get("description") or "").lower()
        ]

    async def bulk_operation(
        self,
        action: str,
        milestone_numbers: List[int],
        due_on: Optional[str] = None,
        owner: Optional[str] = None,
        repo: Optional[str] = None,
    ) -> Dict[str, Any]:
        if action not in BULK_ACTIONS:
            raise ValidationError(
                f"Unknown bulk action: {action}",
                context={"allowed": list(BULK_ACTIONS)},
            )
        if action == "update_due_date":
            to_github_date(due_on)
            if due_on is None:
                raise ValidationError("update_due_date requires due_on")
        owner, repo = self.config.resolve_repository(owner, repo)
        semaphore = asyncio.Semaphore(BULK_CONCURRENCY)

        async def apply(number: int):
            async with semaphore:
                if action == "delete":
                    await self.delete_milestone(number, owner, repo)
                elif action == "update_due_date":
                    await self.update_milestone(number, owner, repo, due_on=due_on)
                else:
                    state = "closed" if action == "close" else "open"
                    await self.update_milestone(number, owner, repo, state=state)

        outcomes = await asyncio.gather(
            *(apply(n) for n in milestone_numbers), return_exceptions=True
        )
        succeeded, failed = [], []
        for number, outcome in zip(milestone_numbers, outcomes):
            if isinstance(outcome, GitHubAPIError):
                failed.append({"milestone_number": number, "error": outcome.to_dict()})
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                succeeded.append(number)
        return {"action": action, "succeeded": succeeded, "failed": failed}
