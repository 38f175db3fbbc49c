"""Core records: projects, versions, hosted servers, royalties.

Records are plain dataclasses persisted as JSON payloads by the record store.
`Version` carries the lifecycle state machine; the transition table below is
the single source of truth for which moves are legal.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional


def utc_now_iso() -> str:
    """Return current timezone-aware UTC datetime as ISO string."""
    return datetime.now(timezone.utc).isoformat()


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class ProjectStatus(str, Enum):
    DRAFT = "draft"
    READY = "ready"
    DEPLOYED = "deployed"


class HostingType(str, Enum):
    SELF = "self"
    PLATFORM = "platform"


class VersionStatus(str, Enum):
    """Version lifecycle states."""
    PENDING = "pending"
    TESTING = "testing"
    ACCEPTED = "accepted"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return not _TRANSITIONS[self]

    def can_transition_to(self, target: "VersionStatus") -> bool:
        return target in _TRANSITIONS[self]


# testing -> testing is a re-run of the smoke tests; nothing leaves accepted/rejected.
_TRANSITIONS: Dict[VersionStatus, FrozenSet[VersionStatus]] = {
    VersionStatus.PENDING: frozenset({
        VersionStatus.TESTING,
        VersionStatus.ACCEPTED,
        VersionStatus.REJECTED,
    }),
    VersionStatus.TESTING: frozenset({
        VersionStatus.TESTING,
        VersionStatus.ACCEPTED,
        VersionStatus.REJECTED,
    }),
    VersionStatus.ACCEPTED: frozenset(),
    VersionStatus.REJECTED: frozenset(),
}


class ActorRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


@dataclass(frozen=True)
class Actor:
    """The authenticated caller, as resolved by the auth collaborator."""
    user_id: str
    role: ActorRole = ActorRole.USER

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN

    def can_manage(self, project: "Project") -> bool:
        return self.is_admin or project.owner_id == self.user_id


@dataclass
class Project:
    """A user's AI server project."""
    project_id: str
    owner_id: str
    name: str
    description: Optional[str] = None
    status: ProjectStatus = ProjectStatus.DRAFT
    hosting_type: Optional[HostingType] = None
    live_version_id: Optional[str] = None
    deployed_server_id: Optional[str] = None
    icon_url: Optional[str] = None
    banner_url: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    @property
    def is_hosted(self) -> bool:
        return (
            self.status == ProjectStatus.DEPLOYED
            and self.hosting_type == HostingType.PLATFORM
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "owner_id": self.owner_id,
            "name": self.name,
            "description": self.description,
            "status": self.status.value,
            "hosting_type": self.hosting_type.value if self.hosting_type else None,
            "live_version_id": self.live_version_id,
            "deployed_server_id": self.deployed_server_id,
            "icon_url": self.icon_url,
            "banner_url": self.banner_url,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Project":
        hosting_type = data.get("hosting_type")
        return cls(
            project_id=str(data["project_id"]),
            owner_id=str(data["owner_id"]),
            name=str(data.get("name") or ""),
            description=data.get("description"),
            status=ProjectStatus(data.get("status", ProjectStatus.DRAFT.value)),
            hosting_type=HostingType(hosting_type) if hosting_type else None,
            live_version_id=data.get("live_version_id"),
            deployed_server_id=data.get("deployed_server_id"),
            icon_url=data.get("icon_url"),
            banner_url=data.get("banner_url"),
            created_at=str(data.get("created_at") or utc_now_iso()),
            updated_at=str(data.get("updated_at") or utc_now_iso()),
        )


@dataclass
class Version:
    """One candidate generation of server code for a project."""
    version_id: str
    project_id: str
    version_number: int
    user_prompt: str
    generated_code: str
    generated_config: Dict[str, Any] = field(default_factory=dict)
    generation_cost: float = 0.0
    refinement_prompt: Optional[str] = None
    parent_version_id: Optional[str] = None
    status: VersionStatus = VersionStatus.PENDING
    test_result: Optional[Dict[str, Any]] = None
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version_id": self.version_id,
            "project_id": self.project_id,
            "version_number": self.version_number,
            "user_prompt": self.user_prompt,
            "refinement_prompt": self.refinement_prompt,
            "generated_code": self.generated_code,
            "generated_config": self.generated_config,
            "generation_cost": self.generation_cost,
            "parent_version_id": self.parent_version_id,
            "status": self.status.value,
            "test_result": self.test_result,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Version":
        return cls(
            version_id=str(data["version_id"]),
            project_id=str(data["project_id"]),
            version_number=int(data.get("version_number", 0)),
            user_prompt=str(data.get("user_prompt") or ""),
            refinement_prompt=data.get("refinement_prompt"),
            generated_code=str(data.get("generated_code") or ""),
            generated_config=dict(data.get("generated_config") or {}),
            generation_cost=float(data.get("generation_cost", 0.0)),
            parent_version_id=data.get("parent_version_id"),
            status=VersionStatus(data.get("status", VersionStatus.PENDING.value)),
            test_result=data.get("test_result"),
            created_at=str(data.get("created_at") or utc_now_iso()),
            updated_at=str(data.get("updated_at") or utc_now_iso()),
        )


@dataclass
class HostedServer:
    """Platform server entry created when a project is deployed."""
    server_id: str
    owner_id: str
    project_id: str
    name: str
    server_url: str
    server_config: Dict[str, Any] = field(default_factory=dict)
    description: Optional[str] = None
    status: str = "active"
    member_ids: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "server_id": self.server_id,
            "owner_id": self.owner_id,
            "project_id": self.project_id,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "server_url": self.server_url,
            "server_config": self.server_config,
            "member_ids": list(self.member_ids),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HostedServer":
        return cls(
            server_id=str(data["server_id"]),
            owner_id=str(data["owner_id"]),
            project_id=str(data["project_id"]),
            name=str(data.get("name") or ""),
            description=data.get("description"),
            status=str(data.get("status") or "active"),
            server_url=str(data.get("server_url") or ""),
            server_config=dict(data.get("server_config") or {}),
            member_ids=list(data.get("member_ids") or []),
            created_at=str(data.get("created_at") or utc_now_iso()),
            updated_at=str(data.get("updated_at") or utc_now_iso()),
        )


@dataclass(frozen=True)
class Royalty:
    """Creator/platform split of one hosted charge. Append-only."""
    royalty_id: str
    project_id: str
    created_image_id: str
    credits_charged: float
    creator_share: float
    platform_share: float
    created_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "royalty_id": self.royalty_id,
            "project_id": self.project_id,
            "created_image_id": self.created_image_id,
            "credits_charged": self.credits_charged,
            "creator_share": self.creator_share,
            "platform_share": self.platform_share,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Royalty":
        return cls(
            royalty_id=str(data["royalty_id"]),
            project_id=str(data["project_id"]),
            created_image_id=str(data["created_image_id"]),
            credits_charged=float(data.get("credits_charged", 0.0)),
            creator_share=float(data.get("creator_share", 0.0)),
            platform_share=float(data.get("platform_share", 0.0)),
            created_at=str(data.get("created_at") or utc_now_iso()),
        )
