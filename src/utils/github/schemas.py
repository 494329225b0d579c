import re
from typing import Annotated, List, Literal, Optional, Union

from pydantic import AfterValidator, BaseModel, Field, model_validator

DATE_PATTERN = re.compile(
    r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d{3})?Z?$|^\d{4}-\d{2}-\d{2}$"
)


def validate_date(value: str) -> str:
    if not DATE_PATTERN.match(value):
        raise ValueError(
            "Dates must be YYYY-MM-DD or ISO 8601 (YYYY-MM-DDTHH:MM:SSZ)"
        )
    return value


DateStr = Annotated[str, AfterValidator(validate_date)]


class RepositoryRef(BaseModel):
    owner: Optional[str] = Field(
        None, description="Repository owner. Defaults to GITHUB_OWNER"
    )
    repo: Optional[str] = Field(
        None, description="Repository name. Defaults to GITHUB_REPO"
    )


class Paging(BaseModel):
    per_page: int = Field(30, ge=1, le=100, description="Items per page")
    page: int = Field(1, ge=1, description="First page to read")
    max_pages: int = Field(1, ge=1, le=10, description="Maximum pages to read")


# Issues


class CreateIssueRequest(RepositoryRef):
    title: str = Field(..., min_length=1, max_length=256)
    body: Optional[str] = Field(None, description="Issue description (Markdown)")
    assignees: List[str] = Field(default_factory=list)
    labels: List[str] = Field(default_factory=list)
    milestone: Optional[int] = Field(None, ge=1, description="Milestone number")


class ListIssuesRequest(RepositoryRef, Paging):
    state: Literal["open", "closed", "all"] = "open"
    assignee: Optional[str] = Field(None, description="Login, 'none' or '*'")
    labels: List[str] = Field(default_factory=list)
    milestone: Optional[str] = Field(
        None, description="Milestone number, 'none' or '*'"
    )
    sort: Literal["created", "updated", "comments"] = "created"
    direction: Literal["asc", "desc"] = "desc"
    since: Optional[DateStr] = Field(None, description="Only issues updated after this")


class IssueNumberRequest(RepositoryRef):
    issue_number: int = Field(..., ge=1)


class UpdateIssueRequest(IssueNumberRequest):
    title: Optional[str] = Field(None, min_length=1, max_length=256)
    body: Optional[str] = None
    state: Optional[Literal["open", "closed"]] = None
    state_reason: Optional[Literal["completed", "not_planned", "reopened"]] = None
    assignees: Optional[List[str]] = None
    labels: Optional[List[str]] = None
    milestone: Optional[int] = Field(
        None, ge=0, description="Milestone number, 0 removes the milestone"
    )


class SearchIssuesRequest(RepositoryRef, Paging):
    query: str = Field(..., min_length=1, description="GitHub issue search syntax")
    sort: Optional[
        Literal["comments", "reactions", "created", "updated", "interactions"]
    ] = None
    order: Literal["asc", "desc"] = "desc"


class ListIssueCommentsRequest(IssueNumberRequest, Paging):
    pass


class AddIssueCommentRequest(IssueNumberRequest):
    body: str = Field(..., min_length=1)


class IssueLabelsRequest(IssueNumberRequest):
    labels: List[str] = Field(..., min_length=1)


class RemoveIssueLabelRequest(IssueNumberRequest):
    label: str = Field(..., min_length=1)


class IssueAssigneesRequest(IssueNumberRequest):
    assignees: List[str] = Field(..., min_length=1)


class LockIssueRequest(IssueNumberRequest):
    lock_reason: Optional[Literal["off-topic", "too heated", "resolved", "spam"]] = None


class BulkIssuesRequest(RepositoryRef):
    action: Literal["close", "open", "assign", "unassign", "label", "unlabel"]
    issue_numbers: List[int] = Field(..., min_length=1, max_length=100)
    assignees: List[str] = Field(default_factory=list)
    labels: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_action_values(self):
        if self.action in ("assign", "unassign") and not self.assignees:
            raise ValueError(f"'{self.action}' requires assignees")
        if self.action in ("label", "unlabel") and not self.labels:
            raise ValueError(f"'{self.action}' requires labels")
        return self


# Milestones


class CreateMilestoneRequest(RepositoryRef):
    title: str = Field(..., min_length=1, max_length=256)
    description: Optional[str] = None
    due_on: Optional[DateStr] = Field(None, description="Due date (YYYY-MM-DD)")
    state: Literal["open", "closed"] = "open"


class ListMilestonesRequest(RepositoryRef, Paging):
    state: Literal["open", "closed", "all"] = "open"
    sort: Literal["due_on", "completeness"] = "due_on"
    direction: Literal["asc", "desc"] = "asc"


class MilestoneNumberRequest(RepositoryRef):
    milestone_number: int = Field(..., ge=1)


class UpdateMilestoneRequest(MilestoneNumberRequest):
    title: Optional[str] = Field(None, min_length=1, max_length=256)
    description: Optional[str] = None
    due_on: Optional[DateStr] = None
    state: Optional[Literal["open", "closed"]] = None


class ListMilestoneIssuesRequest(MilestoneNumberRequest, Paging):
    state: Literal["open", "closed", "all"] = "all"


class SearchMilestonesRequest(RepositoryRef):
    query: str = Field(..., min_length=1)
    state: Literal["open", "closed", "all"] = "all"


class BulkMilestonesRequest(RepositoryRef):
    action: Literal["close", "open", "update_due_date", "delete"]
    milestone_numbers: List[int] = Field(..., min_length=1, max_length=50)
    due_on: Optional[DateStr] = None

    @model_validator(mode="after")
    def check_due_on(self):
        if self.action == "update_due_date" and not self.due_on:
            raise ValueError("'update_due_date' requires due_on")
        return self


# Projects (v2)


class CreateProjectRequest(BaseModel):
    owner: Optional[str] = Field(
        None, description="User or organization login. Defaults to GITHUB_OWNER"
    )
    title: str = Field(..., min_length=1, max_length=256)
    short_description: Optional[str] = Field(None, max_length=300)
    visibility: Literal["private", "public"] = "private"


class ListProjectsRequest(BaseModel):
    owner: Optional[str] = None
    state: Literal["open", "closed", "all"] = "open"
    query: Optional[str] = Field(None, description="Free text filter")
    first: int = Field(20, ge=1, le=100)
    after: Optional[str] = Field(None, description="Cursor from a previous page")


class ProjectIdRequest(BaseModel):
    project_id: str = Field(..., min_length=1, description="Project node ID")


class GetProjectRequest(ProjectIdRequest):
    include_items: bool = False
    items_first: int = Field(20, ge=1, le=100)


class UpdateProjectRequest(ProjectIdRequest):
    title: Optional[str] = Field(None, min_length=1, max_length=256)
    short_description: Optional[str] = Field(None, max_length=300)
    readme: Optional[str] = None
    state: Optional[Literal["open", "closed"]] = None
    visibility: Optional[Literal["private", "public"]] = None


class AddProjectItemRequest(ProjectIdRequest):
    content_id: Optional[str] = Field(
        None, description="Node ID of the issue or pull request"
    )
    owner: Optional[str] = None
    repo: Optional[str] = None
    issue_number: Optional[int] = Field(None, ge=1)

    @model_validator(mode="after")
    def check_content(self):
        if not self.content_id and self.issue_number is None:
            raise ValueError("Either content_id or issue_number is required")
        return self


class UpdateProjectItemFieldRequest(ProjectIdRequest):
    item_id: str = Field(..., min_length=1)
    field_id: str = Field(..., min_length=1)
    value_type: Literal["text", "number", "date", "single_select", "iteration"]
    value: Union[float, str]

    @model_validator(mode="after")
    def check_value(self):
        if self.value_type == "number":
            self.value = float(self.value)
        else:
            self.value = str(self.value)
            if self.value_type == "date":
                validate_date(self.value)
        return self


class RemoveProjectItemRequest(ProjectIdRequest):
    item_id: str = Field(..., min_length=1)


# Operations


class EmptyRequest(BaseModel):
    pass


class InvalidateCacheRequest(BaseModel):
    pattern: str = Field(
        "*", min_length=1, description="Glob pattern, '*' matches any substring"
    )
