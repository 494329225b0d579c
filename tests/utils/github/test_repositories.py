import json
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from src.utils.github.errors import ValidationError
from src.utils.github.milestones import compute_progress, to_github_date
from src.utils.github.projects import format_project
from src.utils.store import FileStore

BASE = "/repos/octo/demo"
NOW = datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)


def issue_payload(number, **extra):
    payload = {
        "id": 1000 + number,
        "node_id": f"I_{number}",
        "number": number,
        "title": f"Issue {number}",
        "state": "open",
        "labels": [{"name": "bug"}],
        "assignees": [{"login": "octo"}],
        "user": {"login": "hubot"},
        "html_url": f"https://github.com/octo/demo/issues/{number}",
    }
    payload.update(extra)
    return payload


def milestone_payload(number, **extra):
    payload = {
        "id": 2000 + number,
        "number": number,
        "title": f"v{number}.0",
        "description": "",
        "state": "open",
        "open_issues": 2,
        "closed_issues": 8,
        "due_on": None,
        "created_at": "2023-11-04T22:13:20Z",
    }
    payload.update(extra)
    return payload


def iso(moment):
    return moment.strftime("%Y-%m-%dT%H:%M:%SZ")


# Issues


@pytest.mark.asyncio
async def test_create_issue_posts_only_supplied_fields(github, fake_github, reply):
    fake_github.add("POST", f"{BASE}/issues", reply(201, json=issue_payload(7)))

    issue = await github.issues.create_issue("Broken build", labels=["bug"])

    body = json.loads(fake_github.calls("POST", f"{BASE}/issues")[0].content)
    assert body == {"title": "Broken build", "labels": ["bug"]}
    assert issue["number"] == 7
    assert issue["labels"] == ["bug"]
    assert issue["assignees"] == ["octo"]
    assert issue["author"] == "hubot"
    assert issue["is_pull_request"] is False


@pytest.mark.asyncio
async def test_list_issues_skips_pull_requests(github, fake_github, reply):
    fake_github.add(
        "GET",
        f"{BASE}/issues",
        reply(
            200,
            json=[
                issue_payload(1),
                issue_payload(2, pull_request={"url": "https://x"}),
                issue_payload(3),
            ],
        ),
    )

    result = await github.issues.list_issues(labels=["bug", "ui"])

    assert [i["number"] for i in result["items"]] == [1, 3]
    params = fake_github.requests[0].url.params
    assert params["labels"] == "bug,ui"
    assert params["state"] == "open"
    assert "assignee" not in params


@pytest.mark.asyncio
async def test_search_scopes_to_repository_and_issues(github, fake_github, reply):
    fake_github.add(
        "GET",
        "/search/issues",
        reply(200, json={"total_count": 1, "items": [issue_payload(4)]}),
    )

    result = await github.issues.search_issues("crash in:title")

    query = fake_github.requests[0].url.params["q"]
    assert query == "crash in:title repo:octo/demo is:issue"
    assert result["pagination"]["total_count"] == 1


@pytest.mark.asyncio
async def test_search_keeps_explicit_qualifiers(github, fake_github, reply):
    fake_github.add("GET", "/search/issues", reply(200, json={"items": []}))

    await github.issues.search_issues("repo:octo/other is:pr label:bug")

    assert fake_github.requests[0].url.params["q"] == "repo:octo/other is:pr label:bug"


@pytest.mark.asyncio
async def test_update_issue_without_changes_is_rejected(github, fake_github):
    with pytest.raises(ValidationError):
        await github.issues.update_issue(1, title=None)
    assert fake_github.requests == []


@pytest.mark.asyncio
async def test_update_issue_milestone_zero_clears_it(github, fake_github, reply):
    fake_github.add("PATCH", f"{BASE}/issues/1", reply(200, json=issue_payload(1)))

    await github.issues.update_issue(1, milestone=0)

    body = json.loads(fake_github.requests[0].content)
    assert body == {"milestone": None}


@pytest.mark.asyncio
async def test_bulk_close_reports_partial_failures(github, fake_github, reply):
    fake_github.add(
        "PATCH", f"{BASE}/issues/1", reply(200, json=issue_payload(1, state="closed"))
    )
    fake_github.add(
        "PATCH", f"{BASE}/issues/3", reply(200, json=issue_payload(3, state="closed"))
    )

    result = await github.issues.bulk_operation("close", [1, 2, 3])

    assert result["succeeded"] == [1, 3]
    assert len(result["failed"]) == 1
    assert result["failed"][0]["issue_number"] == 2
    assert result["failed"][0]["error"]["code"] == "UPSTREAM_REQUEST_ERROR"


@pytest.mark.asyncio
async def test_bulk_rejects_unknown_action(github):
    with pytest.raises(ValidationError):
        await github.issues.bulk_operation("explode", [1])


@pytest.mark.asyncio
async def test_remove_label_quotes_the_name(github, fake_github, reply):
    fake_github.add(
        "DELETE",
        f"{BASE}/issues/1/labels/good first issue",
        reply(200, json=[{"name": "bug"}]),
    )

    labels = await github.issues.remove_label(1, "good first issue")

    assert labels == ["bug"]
    assert "good%20first%20issue" in str(fake_github.requests[0].url)


@pytest.mark.asyncio
async def test_missing_repository_is_a_value_error(make_github, github_config):
    github = make_github(config=replace(github_config, owner=None, repo=None))

    with pytest.raises(ValueError):
        await github.issues.get_issue(1)


# Milestones


def test_progress_for_milestone_due_soon():
    milestone = milestone_payload(
        1,
        due_on=iso(NOW + timedelta(days=3)),
        created_at=iso(NOW - timedelta(days=10)),
    )

    progress = compute_progress(milestone, NOW)

    assert progress["total"] == 10
    assert progress["completed"] == 8
    assert progress["remaining"] == 2
    assert progress["percentage"] == 80
    assert progress["timeline"]["days_until_due"] == 3
    assert progress["timeline"]["is_overdue"] is False
    assert progress["timeline"]["status"] == "due_soon"
    assert progress["velocity"]["issues_per_day"] == 0.8
    expected = NOW + timedelta(days=2.5)
    assert progress["velocity"]["estimated_completion_date"] == expected.isoformat()


def test_progress_status_for_overdue_and_closed_milestones():
    overdue = milestone_payload(1, due_on=iso(NOW - timedelta(days=1)))
    closed = milestone_payload(2, state="closed", due_on=iso(NOW - timedelta(days=1)))
    far = milestone_payload(3, due_on=iso(NOW + timedelta(days=30)))

    assert compute_progress(overdue, NOW)["timeline"]["status"] == "overdue"
    assert compute_progress(closed, NOW)["timeline"]["status"] == "completed"
    assert compute_progress(closed, NOW)["timeline"]["is_overdue"] is False
    assert compute_progress(far, NOW)["timeline"]["status"] == "on_track"


def test_progress_of_empty_milestone():
    progress = compute_progress(
        milestone_payload(1, open_issues=0, closed_issues=0, created_at=None), NOW
    )
    assert progress["percentage"] == 0
    assert progress["velocity"] == {
        "issues_per_day": 0.0,
        "estimated_completion_date": None,
    }


@pytest.mark.parametrize(
    "value,expected",
    [
        ("2024-05-01", "2024-05-01T00:00:00Z"),
        ("2024-05-01T12:30:00Z", "2024-05-01T12:30:00Z"),
        ("2024-05-01T12:30:00", "2024-05-01T12:30:00Z"),
        (None, None),
    ],
)
def test_to_github_date(value, expected):
    assert to_github_date(value) == expected


def test_to_github_date_rejects_other_formats():
    with pytest.raises(ValidationError):
        to_github_date("05/01/2024")


@pytest.mark.asyncio
async def test_create_milestone_normalizes_due_date(github, fake_github, reply):
    fake_github.add("POST", f"{BASE}/milestones", reply(201, json=milestone_payload(4)))

    milestone = await github.milestones.create_milestone("v4.0", due_on="2024-01-31")

    body = json.loads(fake_github.requests[0].content)
    assert body == {"title": "v4.0", "state": "open", "due_on": "2024-01-31T00:00:00Z"}
    assert milestone["number"] == 4


@pytest.mark.asyncio
async def test_progress_is_cached_until_the_milestone_changes(
    github, fake_github, reply
):
    path = f"{BASE}/milestones/1"
    fake_github.add(
        "GET",
        path,
        reply(200, json=milestone_payload(1)),
        reply(200, json=milestone_payload(1, open_issues=0, closed_issues=10)),
    )
    fake_github.add("PATCH", path, reply(200, json=milestone_payload(1)))

    first = await github.milestones.get_progress(1)
    second = await github.milestones.get_progress(1)
    assert first == second
    assert len(fake_github.calls("GET", path)) == 1

    await github.milestones.update_milestone(1, description="scope cut")
    refreshed = await github.milestones.get_progress(1)

    assert len(fake_github.calls("GET", path)) == 2
    assert refreshed["progress"]["percentage"] == 100


@pytest.mark.asyncio
async def test_closing_an_issue_refreshes_milestone_progress(
    github, fake_github, reply
):
    path = f"{BASE}/milestones/1"
    fake_github.add(
        "GET",
        path,
        reply(200, json=milestone_payload(1)),
        reply(200, json=milestone_payload(1, open_issues=1, closed_issues=9)),
    )
    fake_github.add(
        "PATCH", f"{BASE}/issues/5", reply(200, json=issue_payload(5, state="closed"))
    )

    before = await github.milestones.get_progress(1)
    await github.issues.update_issue(5, state="closed")
    after = await github.milestones.get_progress(1)

    assert before["progress"]["percentage"] == 80
    assert after["progress"]["percentage"] == 90
    assert after["progress"]["remaining"] == 1
    assert len(fake_github.calls("GET", path)) == 2


@pytest.mark.asyncio
async def test_renaming_a_milestone_refreshes_cached_issues(
    github, fake_github, reply
):
    issue_path = f"{BASE}/issues/5"
    fake_github.add(
        "GET",
        issue_path,
        reply(200, json=issue_payload(5, milestone=milestone_payload(1))),
        reply(
            200,
            json=issue_payload(5, milestone=milestone_payload(1, title="v1.1")),
        ),
    )
    fake_github.add(
        "PATCH",
        f"{BASE}/milestones/1",
        reply(200, json=milestone_payload(1, title="v1.1")),
    )

    assert (await github.issues.get_issue(5))["milestone"]["title"] == "v1.0"
    await github.milestones.update_milestone(1, title="v1.1")

    assert (await github.issues.get_issue(5))["milestone"]["title"] == "v1.1"
    assert len(fake_github.calls("GET", issue_path)) == 2


@pytest.mark.asyncio
async def test_search_milestones_matches_title_and_description(
    github, fake_github, reply
):
    fake_github.add(
        "GET",
        f"{BASE}/milestones",
        reply(
            200,
            json=[
                milestone_payload(1, title="Beta launch"),
                milestone_payload(2, title="GA", description="after the BETA"),
                milestone_payload(3, title="Docs"),
            ],
        ),
    )

    found = await github.milestones.search_milestones("beta")

    assert [m["number"] for m in found] == [1, 2]


@pytest.mark.asyncio
async def test_bulk_due_date_update(github, fake_github, reply):
    for number in (1, 2):
        fake_github.add(
            "PATCH",
            f"{BASE}/milestones/{number}",
            reply(200, json=milestone_payload(number)),
        )

    result = await github.milestones.bulk_operation(
        "update_due_date", [1, 2], due_on="2024-06-30"
    )

    assert result["succeeded"] == [1, 2]
    assert result["failed"] == []
    bodies = [json.loads(r.content) for r in fake_github.requests]
    assert bodies == [{"due_on": "2024-06-30T00:00:00Z"}] * 2


@pytest.mark.asyncio
async def test_bulk_due_date_update_requires_a_date(github, fake_github):
    with pytest.raises(ValidationError):
        await github.milestones.bulk_operation("update_due_date", [1])
    assert fake_github.requests == []


# Projects

PROJECT_NODE = {
    "id": "PVT_1",
    "number": 3,
    "title": "Roadmap",
    "shortDescription": "Q1 plan",
    "public": True,
    "closed": False,
    "url": "https://github.com/orgs/octo/projects/3",
    "creator": {"login": "hubot"},
    "owner": {"login": "octo"},
    "items": {"totalCount": 1},
}


def graphql_router(routes):
    """Answers GraphQL posts with the data of the first marker found in the query."""
    seen = []

    def respond(request):
        body = json.loads(request.content)
        seen.append(body)
        for marker, data in routes.items():
            if marker in body["query"]:
                if callable(data):
                    data = data(body["variables"])
                return httpx.Response(200, json={"data": data})
        return httpx.Response(
            200, json={"errors": [{"message": "unexpected query"}]}
        )

    respond.seen = seen
    return respond


def test_format_project_with_items():
    project = dict(
        PROJECT_NODE,
        projectItems={
            "nodes": [
                {
                    "id": "PVTI_1",
                    "type": "ISSUE",
                    "content": {"id": "I_5", "number": 5, "title": "Crash"},
                    "fieldValues": {
                        "nodes": [
                            {},
                            {
                                "name": "In progress",
                                "field": {"id": "F_1", "name": "Status"},
                            },
                        ]
                    },
                }
            ]
        },
    )

    formatted = format_project(project)

    assert formatted["visibility"] == "public"
    assert formatted["state"] == "open"
    assert formatted["item_count"] == 1
    assert formatted["items"][0]["content"]["number"] == 5
    assert formatted["items"][0]["field_values"] == [
        {"field": "Status", "field_id": "F_1", "value": "In progress"}
    ]
    assert "fields" not in formatted


@pytest.mark.asyncio
async def test_create_project_applies_description_and_visibility(
    make_github, fake_github, tmp_path
):
    router = graphql_router(
        {
            "query GetOwnerId": {"repositoryOwner": {"id": "O_1", "login": "octo"}},
            "createProjectV2(": {
                "createProjectV2": {
                    "projectV2": dict(PROJECT_NODE, shortDescription=None, public=False)
                }
            },
            "updateProjectV2(": {"updateProjectV2": {"projectV2": PROJECT_NODE}},
        }
    )
    fake_github.add("POST", "/graphql", router)
    store = FileStore(str(tmp_path))
    github = make_github(store=store)

    project = await github.projects.create_project(
        "Roadmap", short_description="Q1 plan", visibility="public"
    )

    assert project["short_description"] == "Q1 plan"
    assert project["visibility"] == "public"
    create, update = router.seen[1], router.seen[2]
    assert create["variables"] == {"ownerId": "O_1", "title": "Roadmap"}
    assert update["variables"]["input"] == {
        "projectId": "PVT_1",
        "shortDescription": "Q1 plan",
        "public": True,
    }
    assert store.read("projects/PVT_1/metadata.json")["title"] == "Roadmap"


@pytest.mark.asyncio
async def test_private_project_needs_no_follow_up_update(github, fake_github):
    router = graphql_router(
        {
            "query GetOwnerId": {"repositoryOwner": {"id": "O_1", "login": "octo"}},
            "createProjectV2(": {
                "createProjectV2": {"projectV2": dict(PROJECT_NODE, public=False)}
            },
        }
    )
    fake_github.add("POST", "/graphql", router)

    project = await github.projects.create_project("Roadmap")

    assert project["visibility"] == "private"
    assert len(router.seen) == 2


@pytest.mark.asyncio
async def test_owner_id_is_cached(github, fake_github):
    router = graphql_router(
        {"query GetOwnerId": {"repositoryOwner": {"id": "O_1", "login": "octo"}}}
    )
    fake_github.add("POST", "/graphql", router)

    assert await github.projects.get_owner_id() == "O_1"
    assert await github.projects.get_owner_id("octo") == "O_1"
    assert len(router.seen) == 1


@pytest.mark.asyncio
async def test_unknown_owner_is_rejected(github, fake_github):
    router = graphql_router({"query GetOwnerId": {"repositoryOwner": None}})
    fake_github.add("POST", "/graphql", router)

    with pytest.raises(ValidationError):
        await github.projects.get_owner_id("ghost")


@pytest.mark.asyncio
async def test_list_projects_builds_search_query(github, fake_github):
    router = graphql_router(
        {
            "query ListProjects": {
                "repositoryOwner": {
                    "projectsV2": {
                        "totalCount": 21,
                        "pageInfo": {"hasNextPage": True, "endCursor": "Y3Vy"},
                        "nodes": [PROJECT_NODE],
                    }
                }
            }
        }
    )
    fake_github.add("POST", "/graphql", router)

    result = await github.projects.list_projects(query="roadmap", first=1)

    assert router.seen[0]["variables"] == {
        "login": "octo",
        "first": 1,
        "after": None,
        "query": "is:open roadmap",
    }
    assert result["total_count"] == 21
    assert result["has_next_page"] is True
    assert result["end_cursor"] == "Y3Vy"
    assert result["projects"][0]["title"] == "Roadmap"


@pytest.mark.asyncio
async def test_get_project_is_cached_and_invalidated_by_updates(github, fake_github):
    router = graphql_router(
        {
            "query GetProject": {"node": PROJECT_NODE},
            "updateProjectV2(": {
                "updateProjectV2": {"projectV2": dict(PROJECT_NODE, closed=True)}
            },
        }
    )
    fake_github.add("POST", "/graphql", router)

    await github.projects.get_project("PVT_1")
    await github.projects.get_project("PVT_1")
    assert len(router.seen) == 1

    updated = await github.projects.update_project("PVT_1", state="closed")
    assert updated["state"] == "closed"
    assert router.seen[1]["variables"]["input"] == {
        "projectId": "PVT_1",
        "closed": True,
    }

    await github.projects.get_project("PVT_1")
    assert len(router.seen) == 3


@pytest.mark.asyncio
async def test_missing_project_is_rejected(github, fake_github):
    router = graphql_router({"query GetProject": {"node": None}})
    fake_github.add("POST", "/graphql", router)

    with pytest.raises(ValidationError) as exc_info:
        await github.projects.get_project("PVT_missing")
    assert exc_info.value.context == {"project_id": "PVT_missing"}


@pytest.mark.asyncio
async def test_update_project_without_changes_is_rejected(github, fake_github):
    with pytest.raises(ValidationError):
        await github.projects.update_project("PVT_1")
    assert fake_github.requests == []


@pytest.mark.asyncio
async def test_delete_project_keeps_a_backup(make_github, fake_github, tmp_path):
    router = graphql_router(
        {
            "query GetProject": {
                "node": dict(PROJECT_NODE, projectItems={"nodes": []})
            },
            "deleteProjectV2(": {
                "deleteProjectV2": {"projectV2": {"id": "PVT_1", "title": "Roadmap"}}
            },
        }
    )
    fake_github.add("POST", "/graphql", router)
    store = FileStore(str(tmp_path))
    github = make_github(store=store)

    result = await github.projects.delete_project("PVT_1")

    assert result == {"project_id": "PVT_1", "title": "Roadmap", "deleted": True}
    assert router.seen[0]["variables"]["includeItems"] is True
    assert store.list("projects/PVT_1") == [
        "projects/PVT_1/backup-20231114T221320Z.json"
    ]
    backup = store.read("projects/PVT_1/backup-20231114T221320Z.json")
    assert backup["items"] == []


@pytest.mark.asyncio
async def test_delete_project_without_store_skips_snapshot(github, fake_github):
    router = graphql_router(
        {"deleteProjectV2(": {"deleteProjectV2": {"projectV2": {"id": "PVT_1"}}}}
    )
    fake_github.add("POST", "/graphql", router)

    result = await github.projects.delete_project("PVT_1")

    assert result["deleted"] is True
    assert len(router.seen) == 1


@pytest.mark.asyncio
async def test_add_issue_to_project_resolves_node_id(github, fake_github, reply):
    fake_github.add("GET", f"{BASE}/issues/5", reply(200, json=issue_payload(5)))
    router = graphql_router(
        {
            "addProjectV2ItemById(": {
                "addProjectV2ItemById": {"item": {"id": "PVTI_9", "type": "ISSUE"}}
            }
        }
    )
    fake_github.add("POST", "/graphql", router)

    result = await github.projects.add_item("PVT_1", issue_number=5)

    assert result == {"project_id": "PVT_1", "item_id": "PVTI_9", "type": "ISSUE"}
    assert router.seen[0]["variables"] == {"projectId": "PVT_1", "contentId": "I_5"}


@pytest.mark.asyncio
async def test_add_item_needs_content(github):
    with pytest.raises(ValidationError):
        await github.projects.add_item("PVT_1")


@pytest.mark.asyncio
async def test_update_item_field_maps_value_type(github, fake_github):
    router = graphql_router(
        {
            "updateProjectV2ItemFieldValue(": {
                "updateProjectV2ItemFieldValue": {"projectV2Item": {"id": "PVTI_9"}}
            }
        }
    )
    fake_github.add("POST", "/graphql", router)

    result = await github.projects.update_item_field(
        "PVT_1", "PVTI_9", "F_1", "single_select", "OPT_2"
    )

    assert result == {"project_id": "PVT_1", "item_id": "PVTI_9", "field_id": "F_1"}
    assert router.seen[0]["variables"]["value"] == {"singleSelectOptionId": "OPT_2"}


@pytest.mark.asyncio
async def test_update_item_field_rejects_unknown_type(github, fake_github):
    with pytest.raises(ValidationError):
        await github.projects.update_item_field("PVT_1", "PVTI_9", "F_1", "color", "x")
    assert fake_github.requests == []


@pytest.mark.asyncio
async def test_remove_item(github, fake_github):
    router = graphql_router(
        {"deleteProjectV2Item(": {"deleteProjectV2Item": {"deletedItemId": "PVTI_9"}}}
    )
    fake_github.add("POST", "/graphql", router)

    result = await github.projects.remove_item("PVT_1", "PVTI_9")

    assert result == {"project_id": "PVT_1", "deleted_item_id": "PVTI_9"}
