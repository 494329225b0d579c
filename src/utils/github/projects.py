import time
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from src.utils.github.errors import ValidationError
from src.utils.github.graphql import GraphQLClient

logger = logging.getLogger("github-projects")

PROJECT_KEY = "github:graphql:project"
PROJECTS_LIST_KEY = "github:graphql:projects"
OWNER_KEY = "github:graphql:owner"

PROJECT_SELECTION = """
      id
      number
      title
      shortDescription
      readme
      public
      closed
      url
      createdAt
      updatedAt
      closedAt
      creator { login }
      owner {
        ... on User { login }
        ... on Organization { login }
      }
      items { totalCount }
      fields(first: 20) {
        nodes {
          ... on ProjectV2FieldCommon { id name dataType }
          ... on ProjectV2SingleSelectField { options { id name } }
        }
      }
      views(first: 10) { nodes { id name number layout } }
"""

ITEM_SELECTION = """
        nodes {
          id
          type
          createdAt
          updatedAt
          content {
            ... on Issue { id number title url state }
            ... on PullRequest { id number title url state }
            ... on DraftIssue { id title }
          }
          fieldValues(first: 20) {
            nodes {
              ... on ProjectV2ItemFieldTextValue {
                text
                field { ... on ProjectV2FieldCommon { id name } }
              }
              ... on ProjectV2ItemFieldNumberValue {
                number
                field { ... on ProjectV2FieldCommon { id name } }
              }
              ... on ProjectV2ItemFieldDateValue {
                date
                field { ... on ProjectV2FieldCommon { id name } }
              }
              ... on ProjectV2ItemFieldSingleSelectValue {
                name
                field { ... on ProjectV2FieldCommon { id name } }
              }
            }
          }
        }
"""

OWNER_ID_QUERY = """
query GetOwnerId($login: String!) {
  repositoryOwner(login: $login) { id login }
}
"""

GET_PROJECT_QUERY = (
    """
query GetProject($projectId: ID!, $itemsFirst: Int!, $includeItems: Boolean!) {
  node(id: $projectId) {
    ... on ProjectV2 {
"""
    + PROJECT_SELECTION
    + """
      projectItems: items(first: $itemsFirst) @include(if: $includeItems) {
"""
    + ITEM_SELECTION
    + """
      }
    }
  }
}
"""
)

LIST_PROJECTS_QUERY = """
query ListProjects($login: String!, $first: Int!, $after: String, $query: String) {
  repositoryOwner(login: $login) {
    ... on ProjectV2Owner {
      projectsV2(
        first: $first
        after: $after
        query: $query
        orderBy: {field: UPDATED_AT, direction: DESC}
      ) {
        totalCount
        pageInfo { hasNextPage endCursor }
        nodes {
          id
          number
          title
          shortDescription
          public
          closed
          url
          createdAt
          updatedAt
          items { totalCount }
        }
      }
    }
  }
}
"""

CREATE_PROJECT_MUTATION = (
    """
mutation CreateProject($ownerId: ID!, $title: String!) {
  createProjectV2(input: {ownerId: $ownerId, title: $title}) {
    projectV2 {
"""
    + PROJECT_SELECTION
    + """
    }
  }
}
"""
)

UPDATE_PROJECT_MUTATION = (
    """
mutation UpdateProject($input: UpdateProjectV2Input!) {
  updateProjectV2(input: $input) {
    projectV2 {
"""
    + PROJECT_SELECTION
    + """
    }
  }
}
"""
)

DELETE_PROJECT_MUTATION = """
mutation DeleteProject($projectId: ID!) {
  deleteProjectV2(input: {projectId: $projectId}) {
    projectV2 { id title }
  }
}
"""

ADD_ITEM_MUTATION = """
mutation AddProjectItem($projectId: ID!, $contentId: ID!) {
  addProjectV2ItemById(input: {projectId: $projectId, contentId: $contentId}) {
    item { id type }
  }
}
"""

UPDATE_ITEM_FIELD_MUTATION = """
mutation UpdateProjectItemField(
  $projectId: ID!
  $itemId: ID!
  $fieldId: ID!
  $value: ProjectV2FieldValue!
) {
  updateProjectV2ItemFieldValue(
    input: {projectId: $projectId, itemId: $itemId, fieldId: $fieldId, value: $value}
  ) {
    projectV2Item { id }
  }
}
"""

REMOVE_ITEM_MUTATION = """
mutation RemoveProjectItem($projectId: ID!, $itemId: ID!) {
  deleteProjectV2Item(input: {projectId: $projectId, itemId: $itemId}) {
    deletedItemId
  }
}
"""

FIELD_VALUE_KEYS = {
    "text": "text",
    "number": "number",
    "date": "date",
    "single_select": "singleSelectOptionId",
    "iteration": "iterationId",
}


def _format_field_value(value: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if not value:
        return None
    field = value.get("field") or {}
    for key in ("text", "number", "date", "name"):
        if key in value:
            return {
                "field": field.get("name"),
                "field_id": field.get("id"),
                "value": value[key],
            }
    return None


def format_item(item: Dict[str, Any]) -> Dict[str, Any]:
    content = item.get("content") or {}
    nodes = (item.get("fieldValues") or {}).get("nodes", [])
    values = [v for v in (_format_field_value(n) for n in nodes) if v]
    return {
        "id": item.get("id"),
        "type": item.get("type"),
        "content": {
            "id": content.get("id"),
            "number": content.get("number"),
            "title": content.get("title"),
            "url": content.get("url"),
            "state": content.get("state"),
        },
        "field_values": values,
        "created_at": item.get("createdAt"),
        "updated_at": item.get("updatedAt"),
    }


def format_project(project: Dict[str, Any]) -> Dict[str, Any]:
    """Reshape a ProjectV2 node into the fields tools return."""
    formatted = {
        "id": project.get("id"),
        "number": project.get("number"),
        "title": project.get("title"),
        "short_description": project.get("shortDescription"),
        "readme": project.get("readme"),
        "visibility": "public" if project.get("public") else "private",
        "state": "closed" if project.get("closed") else "open",
        "url": project.get("url"),
        "creator": (project.get("creator") or {}).get("login"),
        "owner": (project.get("owner") or {}).get("login"),
        "created_at": project.get("createdAt"),
        "updated_at": project.get("updatedAt"),
        "closed_at": project.get("closedAt"),
        "item_count": (project.get("items") or {}).get("totalCount", 0),
    }
    if "fields" in project:
        formatted["fields"] = [
            {
                "id": f.get("id"),
                "name": f.get("name"),
                "data_type": f.get("dataType"),
                "options": f.get("options"),
            }
            for f in (project.get("fields") or {}).get("nodes", [])
            if f
        ]
    if "views" in project:
        formatted["views"] = (project.get("views") or {}).get("nodes", [])
    if "projectItems" in project:
        formatted["items"] = [
            format_item(i) for i in (project.get("projectItems") or {}).get("nodes", [])
        ]
    return formatted


class ProjectRepository:
    """
    GitHub Projects (v2) operations through the cached GraphQL accessor.

    When a blob store is configured, project metadata is persisted on create
    and update and a snapshot is kept before a project is deleted.
    """

    def __init__(
        self,
        graphql: GraphQLClient,
        config,
        issues=None,
        store=None,
        clock: Callable[[], float] = time.time,
    ):
        self.graphql = graphql
        self.config = config
        self.issues = issues
        self.store = store
        self.clock = clock

    def _owner(self, owner: Optional[str]) -> str:
        owner = owner or self.config.owner
        if not owner:
            raise ValueError(
                "Project owner is required. Pass owner or set GITHUB_OWNER."
            )
        return owner

    def _invalidate(self, project_id: Optional[str] = None):
        if project_id:
            self.graphql.cache.invalidate(f"{PROJECT_KEY}:{project_id}:*")
        self.graphql.cache.invalidate(f"{PROJECTS_LIST_KEY}:*")

    def _persist(self, path: str, data: Dict[str, Any]):
        if self.store is None:
            return
        self.store.write(path, data)

    async def get_owner_id(self, owner: Optional[str] = None) -> str:
        login = self._owner(owner)
        data = await self.graphql.query(
            OWNER_ID_QUERY, {"login": login}, cache_key=f"{OWNER_KEY}:{login}"
        )
        node = data.get("repositoryOwner")
        if not node:
            raise ValidationError(
                f"GitHub owner not found: {login}", context={"owner": login}
            )
        return node["id"]

    async def create_project(
        self,
        title: str,
        owner: Optional[str] = None,
        short_description: Optional[str] = None,
        visibility: str = "private",
    ) -> Dict[str, Any]:
        owner_id = await self.get_owner_id(owner)
        data = await self.graphql.mutate(
            CREATE_PROJECT_MUTATION,
            {"ownerId": owner_id, "title": title},
            invalidate=[f"{PROJECTS_LIST_KEY}:*"],
        )
        project = data["createProjectV2"]["projectV2"]

        # createProjectV2 only takes a title, the rest needs a follow-up update
        if short_description is not None or visibility == "public":
            return await self.update_project(
                project["id"],
                short_description=short_description,
                visibility=visibility,
            )

        formatted = format_project(project)
        self._persist(f"projects/{formatted['id']}/metadata.json", formatted)
        logger.info(f"Created project {formatted['id']} ({title})")
        return formatted

    async def get_project(
        self, project_id: str, include_items: bool = False, items_first: int = 20
    ) -> Dict[str, Any]:
        data = await self.graphql.query(
            GET_PROJECT_QUERY,
            {
                "projectId": project_id,
                "itemsFirst": items_first,
                "includeItems": include_items,
            },
            cache_key=f"{PROJECT_KEY}:{project_id}:{include_items}:{items_first}",
        )
        node = data.get("node")
        if not node:
            raise ValidationError(
                f"Project not found: {project_id}", context={"project_id": project_id}
            )
        return format_project(node)

    async def list_projects(
        self,
        owner: Optional[str] = None,
        state: str = "open",
        query: Optional[str] = None,
        first: int = 20,
        after: Optional[str] = None,
    ) -> Dict[str, Any]:
        login = self._owner(owner)
        terms = []
        if state in ("open", "closed"):
            terms.append(f"is:{state}")
        if query:
            terms.append(query)
        variables = {
            "login": login,
            "first": first,
            "after": after,
            "query": " ".join(terms) or None,
        }
        digest = GraphQLClient.cache_key(LIST_PROJECTS_QUERY, variables).rsplit(":", 1)
        data = await self.graphql.query(
            LIST_PROJECTS_QUERY,
            variables,
            cache_key=f"{PROJECTS_LIST_KEY}:{login}:{digest[-1]}",
            ttl=self.config.list_ttl,
        )
        connection = (data.get("repositoryOwner") or {}).get("projectsV2") or {}
        page_info = connection.get("pageInfo") or {}
        return {
            "projects": [format_project(p) for p in connection.get("nodes", []) if p],
            "total_count": connection.get("totalCount", 0),
            "has_next_page": page_info.get("hasNextPage", False),
            "end_cursor": page_info.get("endCursor"),
        }

    async def update_project(
        self,
        project_id: str,
        title: Optional[str] = None,
        short_description: Optional[str] = None,
        readme: Optional[str] = None,
        state: Optional[str] = None,
        visibility: Optional[str] = None,
    ) -> Dict[str, Any]:
        changes = {
            "title": title,
            "shortDescription": short_description,
            "readme": readme,
            "closed": None if state is None else state == "closed",
            "public": None if visibility is None else visibility == "public",
        }
        changes = {k: v for k, v in changes.items() if v is not None}
        if not changes:
            raise ValidationError(
                "No changes supplied for project update",
                context={"project_id": project_id},
            )
        data = await self.graphql.mutate(
            UPDATE_PROJECT_MUTATION, {"input": {"projectId": project_id, **changes}}
        )
        self._invalidate(project_id)
        formatted = format_project(data["updateProjectV2"]["projectV2"])
        self._persist(f"projects/{project_id}/metadata.json", formatted)
        return formatted

    async def delete_project(self, project_id: str) -> Dict[str, Any]:
        if self.store is not None:
            snapshot = await self.get_project(project_id, include_items=True)
            stamp = datetime.fromtimestamp(self.clock(), tz=timezone.utc)
            self._persist(
                f"projects/{project_id}/backup-{stamp.strftime('%Y%m%dT%H%M%SZ')}.json",
                snapshot,
            )
        data = await self.graphql.mutate(
            DELETE_PROJECT_MUTATION, {"projectId": project_id}
        )
        self._invalidate(project_id)
        deleted = (data.get("deleteProjectV2") or {}).get("projectV2") or {}
        logger.info(f"Deleted project {project_id}")
        return {
            "project_id": project_id,
            "title": deleted.get("title"),
            "deleted": True,
        }

    async def add_item(
        self,
        project_id: str,
        content_id: Optional[str] = None,
        issue_number: Optional[int] = None,
        owner: Optional[str] = None,
        repo: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not content_id:
            if issue_number is None or self.issues is None:
                raise ValidationError("Either content_id or issue_number is required")
            content_id = await self.issues.get_issue_node_id(issue_number, owner, repo)
        data = await self.graphql.mutate(
            ADD_ITEM_MUTATION, {"projectId": project_id, "contentId": content_id}
        )
        self._invalidate(project_id)
        item = data["addProjectV2ItemById"]["item"]
        return {
            "project_id": project_id,
            "item_id": item["id"],
            "type": item.get("type"),
        }

    async def update_item_field(
        self,
        project_id: str,
        item_id: str,
        field_id: str,
        value_type: str,
        value: Any,
    ) -> Dict[str, Any]:
        if value_type not in FIELD_VALUE_KEYS:
            raise ValidationError(
                f"Unsupported field value type: {value_type}",
                context={"allowed": list(FIELD_VALUE_KEYS)},
            )
        data = await self.graphql.mutate(
            UPDATE_ITEM_FIELD_MUTATION,
            {
                "projectId": project_id,
                "itemId": item_id,
                "fieldId": field_id,
                "value": {FIELD_VALUE_KEYS[value_type]: value},
            },
        )
        self._invalidate(project_id)
        updated = data["updateProjectV2ItemFieldValue"]["projectV2Item"]
        return {
            "project_id": project_id,
            "item_id": updated["id"],
            "field_id": field_id,
        }

    async def remove_item(self, project_id: str, item_id: str) -> Dict[str, Any]:
        data = await self.graphql.mutate(
            REMOVE_ITEM_MUTATION, {"projectId": project_id, "itemId": item_id}
        )
        self._invalidate(project_id)
        return {
            "project_id": project_id,
            "deleted_item_id": data["deleteProjectV2Item"]["deletedItemId"],
        }
