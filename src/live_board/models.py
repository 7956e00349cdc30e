"""Domain records and view criteria for the live board."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union


class IssueStatus(str, Enum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    CLOSED = "CLOSED"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)


class IssuePriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _PRIORITY_ORDER.index(self)


_STATUS_ORDER = (IssueStatus.OPEN, IssueStatus.IN_PROGRESS, IssueStatus.CLOSED)
_PRIORITY_ORDER = (
    IssuePriority.LOW,
    IssuePriority.MEDIUM,
    IssuePriority.HIGH,
    IssuePriority.CRITICAL,
)

SORT_FIELDS = ("createdAt", "priority", "title", "status")


def _normalize_id(value: Any) -> Optional[str]:
    """Identifiers arrive as UUID strings or numbers; keep them as opaque strings."""

    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    return text or None


def _coerce_enum(enum_type, value: Any):
    if value is None or value == "":
        return None
    if isinstance(value, enum_type):
        return value
    return enum_type(str(value).upper())


@dataclass(frozen=True)
class User:
    id: str
    email: str = ""
    full_name: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> Optional[User]:
        if not isinstance(data, dict) or not data:
            return None
        user_id = _normalize_id(data.get("id"))
        if user_id is None:
            return None
        return cls(
            id=user_id,
            email=data.get("email") or "",
            full_name=data.get("fullName") or "",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "email": self.email, "fullName": self.full_name}


@dataclass(frozen=True)
class Issue:
    """A single issue as last reported by the server.

    Every stream payload and every REST response carries a complete snapshot,
    so an Issue is replaced wholesale rather than patched field by field.
    """

    id: str
    title: str
    status: IssueStatus = IssueStatus.OPEN
    priority: IssuePriority = IssuePriority.MEDIUM
    project_id: Optional[str] = None
    project_name: str = ""
    description: str = ""
    assignee: Optional[User] = None
    created_by: Optional[User] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    comment_count: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Issue:
        issue_id = _normalize_id(data.get("id"))
        if issue_id is None:
            raise ValueError("Issue payload is missing an id")
        return cls(
            id=issue_id,
            title=str(data.get("title") or ""),
            status=_coerce_enum(IssueStatus, data.get("status")) or IssueStatus.OPEN,
            priority=_coerce_enum(IssuePriority, data.get("priority")) or IssuePriority.MEDIUM,
            project_id=_normalize_id(data.get("projectId")),
            project_name=data.get("projectName") or "",
            description=data.get("description") or "",
            assignee=User.from_dict(data.get("assignee")),
            created_by=User.from_dict(data.get("createdBy")),
            created_at=data.get("createdAt"),
            updated_at=data.get("updatedAt"),
            comment_count=int(data.get("commentCount") or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "projectId": self.project_id,
            "projectName": self.project_name,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "priority": self.priority.value,
            "assignee": self.assignee.to_dict() if self.assignee else None,
            "createdBy": self.created_by.to_dict() if self.created_by else None,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "commentCount": self.comment_count,
        }

    @property
    def assignee_id(self) -> Optional[str]:
        return self.assignee.id if self.assignee else None

    def with_changes(self, changes: Dict[str, Any]) -> Issue:
        """Return a copy with REST-style update fields applied locally."""

        updates: Dict[str, Any] = {}
        for key, value in changes.items():
            if key == "status":
                updates["status"] = _coerce_enum(IssueStatus, value)
            elif key == "priority":
                updates["priority"] = _coerce_enum(IssuePriority, value)
            elif key in ("title", "description"):
                updates[key] = str(value or "")
            elif key == "assigneeId":
                # Only the id is known until the server answers with the full user.
                assignee_id = _normalize_id(value)
                updates["assignee"] = User(id=assignee_id) if assignee_id else None
            else:
                raise ValueError(f"Unsupported issue field: {key}")
        return replace(self, **updates)


@dataclass(frozen=True)
class Project:
    id: str
    name: str
    description: str = ""
    owner: Optional[User] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    member_ids: Tuple[str, ...] = ()
    issue_count: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Project:
        project_id = _normalize_id(data.get("id"))
        if project_id is None:
            raise ValueError("Project payload is missing an id")
        members = []
        for member in data.get("members") or []:
            user = User.from_dict(member.get("user")) if isinstance(member, dict) else None
            if user:
                members.append(user.id)
        return cls(
            id=project_id,
            name=str(data.get("name") or ""),
            description=data.get("description") or "",
            owner=User.from_dict(data.get("owner")),
            created_at=data.get("createdAt"),
            updated_at=data.get("updatedAt"),
            member_ids=tuple(members),
            issue_count=int(data.get("issueCount") or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "owner": self.owner.to_dict() if self.owner else None,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "memberIds": list(self.member_ids),
            "issueCount": self.issue_count,
        }

    @property
    def title(self) -> str:
        return self.name


Record = Union[Issue, Project]


@dataclass(frozen=True)
class FilterCriteria:
    """Optional equality criteria; an unset field matches everything."""

    project_id: Optional[str] = None
    status: Optional[IssueStatus] = None
    priority: Optional[IssuePriority] = None
    assignee_id: Optional[str] = None
    search: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> FilterCriteria:
        search = (data.get("search") or "").strip()
        return cls(
            project_id=_normalize_id(data.get("projectId")),
            status=_coerce_enum(IssueStatus, data.get("status")),
            priority=_coerce_enum(IssuePriority, data.get("priority")),
            assignee_id=_normalize_id(data.get("assigneeId")),
            search=search or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "projectId": self.project_id,
            "status": self.status.value if self.status else None,
            "priority": self.priority.value if self.priority else None,
            "assigneeId": self.assignee_id,
            "search": self.search,
        }

    def to_params(self) -> Dict[str, str]:
        """Render the set criteria as REST query parameters."""

        return {key: str(value) for key, value in self.to_dict().items() if value}


@dataclass(frozen=True)
class SortCriteria:
    field: str = "createdAt"
    descending: bool = True

    def __post_init__(self) -> None:
        if self.field not in SORT_FIELDS:
            raise ValueError(f"Unsupported sort field: {self.field}")

    @classmethod
    def parse(cls, value: Optional[str]) -> SortCriteria:
        """Parse the REST `field,direction` form, e.g. ``createdAt,desc``."""

        if not value:
            return cls()
        field_name, _, direction = value.partition(",")
        direction = (direction or "asc").strip().lower()
        if direction not in ("asc", "desc"):
            raise ValueError(f"Unsupported sort direction: {direction}")
        return cls(field=field_name.strip(), descending=direction == "desc")

    def to_param(self) -> str:
        return f"{self.field},{'desc' if self.descending else 'asc'}"


@dataclass
class PageState:
    """Page bookkeeping; exact only right after a fetch.

    Streamed creates and deletes nudge ``total_elements`` by one without
    touching ``total_pages``, so both drift under sustained event traffic.
    """

    number: int = 0
    size: int = 20
    total_elements: int = 0
    total_pages: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "number": self.number,
            "size": self.size,
            "totalElements": self.total_elements,
            "totalPages": self.total_pages,
        }


@dataclass
class Page:
    content: list = field(default_factory=list)
    number: int = 0
    size: int = 20
    total_elements: int = 0
    total_pages: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any], record_type=Issue) -> Page:
        pageable = data.get("pageable") or {}
        content = [record_type.from_dict(item) for item in data.get("content") or []]
        return cls(
            content=content,
            number=int(data.get("number", pageable.get("pageNumber", 0)) or 0),
            size=int(data.get("size", pageable.get("pageSize", len(content))) or 0),
            total_elements=int(data.get("totalElements") or 0),
            total_pages=int(data.get("totalPages") or 0),
        )
