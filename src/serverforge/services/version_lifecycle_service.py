"""Version Lifecycle Manager.

Owns the project/version state machine and is the only place credits are
charged for generated code:

    pending --run_tests--> testing --run_tests--> testing
    pending|testing --accept--> accepted   (charges generation_cost once)
    pending|testing --reject--> rejected   (free)

Accepted and rejected versions are immutable. Accept runs its balance check,
status compare-and-swap, deduction and live-version update in one store
transaction, so two concurrent accepts of one version charge exactly once.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog

from serverforge.config import settings
from serverforge.domain.errors import (
    InsufficientCreditsError,
    InvalidRequestError,
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
)
from serverforge.domain.models import (
    Actor,
    HostedServer,
    HostingType,
    Project,
    ProjectStatus,
    Version,
    VersionStatus,
    new_id,
    utc_now_iso,
)
from serverforge.kernel.verification.smoke_runner import SmokeTestReport, SmokeTestRunner
from serverforge.services.code_generation_service import CodeGenerationService
from serverforge.services.credit_ledger import CreditLedger
from serverforge.services.generation_prompts import ENTRY_FILE
from serverforge.services.record_store import (
    KIND_HOSTED_SERVER,
    KIND_PROJECT,
    KIND_VERSION,
    RecordStore,
    StoreTransaction,
)
from serverforge.services.royalty_service import RoyaltyLedger

logger = structlog.get_logger()

PENDING_CHARGE_NOTE = "Credits will be deducted when you accept this version"

_UNSET: Any = object()


def _require_text(value: Optional[str], message: str) -> str:
    text = str(value or "").strip()
    if not text:
        raise InvalidRequestError(message)
    return text


def _optional_text(value: Optional[str]) -> Optional[str]:
    text = str(value or "").strip()
    return text or None


def package_slug(name: str) -> str:
    return re.sub(r"[^a-z0-9]", "-", name.lower())


@dataclass
class GenerationResult:
    project: Project
    version: Version
    files: Dict[str, str] = field(default_factory=dict)
    suggested_name: str = ""
    suggested_description: str = ""
    cost: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project": self.project.to_dict(),
            "version": self.version.to_dict(),
            "files": dict(self.files),
            "suggested_name": self.suggested_name,
            "suggested_description": self.suggested_description,
            "cost": self.cost,
            "note": PENDING_CHARGE_NOTE,
        }


@dataclass
class RefinementResult:
    project: Project
    version: Version
    files: Dict[str, str] = field(default_factory=dict)
    changes: List[str] = field(default_factory=list)
    cost: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project": self.project.to_dict(),
            "version": self.version.to_dict(),
            "files": dict(self.files),
            "changes": list(self.changes),
            "cost": self.cost,
            "note": PENDING_CHARGE_NOTE,
        }


@dataclass
class AcceptResult:
    project: Project
    version: Version
    credits_deducted: float
    balance: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project": self.project.to_dict(),
            "version": self.version.to_dict(),
            "credits_deducted": self.credits_deducted,
            "balance": self.balance,
        }


@dataclass
class Deployment:
    project: Project
    server: HostedServer

    @property
    def server_url(self) -> str:
        return self.server.server_url

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project": self.project.to_dict(),
            "server_id": self.server.server_id,
            "server_url": self.server.server_url,
            "server": self.server.to_dict(),
        }


@dataclass(frozen=True)
class ExportBundle:
    """Live version handed to the packaging collaborator for self-hosting."""
    entry_path: str
    source: str
    config: Dict[str, Any]
    name: str
    description: Optional[str] = None

    @property
    def package_name(self) -> str:
        return package_slug(self.name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_path": self.entry_path,
            "source": self.source,
            "config": self.config,
            "name": self.name,
            "description": self.description,
            "package_name": self.package_name,
        }


class VersionLifecycleService:
    """Project and version operations, each scoped to an acting user."""

    def __init__(
        self,
        store: RecordStore,
        generator: Optional[CodeGenerationService] = None,
        smoke_runner: Optional[SmokeTestRunner] = None,
        credits: Optional[CreditLedger] = None,
        royalties: Optional[RoyaltyLedger] = None,
        generation_cost: Optional[float] = None,
        refinement_cost: Optional[float] = None,
        hosted_base_path: Optional[str] = None,
    ):
        self.store = store
        self._generator = generator
        self._smoke_runner = smoke_runner
        self.credits = credits or CreditLedger(store)
        self.royalties = royalties or RoyaltyLedger(store)
        self.generation_cost = settings.generation_cost if generation_cost is None else generation_cost
        self.refinement_cost = settings.refinement_cost if refinement_cost is None else refinement_cost
        self.hosted_base_path = (hosted_base_path or settings.hosted_base_path).rstrip("/")

    @property
    def generator(self) -> CodeGenerationService:
        if self._generator is None:
            self._generator = CodeGenerationService()
        return self._generator

    @property
    def smoke_runner(self) -> SmokeTestRunner:
        if self._smoke_runner is None:
            from serverforge.kernel.sandbox.sandbox_runner import get_sandbox_engine

            self._smoke_runner = SmokeTestRunner(get_sandbox_engine())
        return self._smoke_runner

    # ------------------------------------------------------------------
    # Loading and access checks
    # ------------------------------------------------------------------

    @staticmethod
    def _project_in(tx: StoreTransaction, actor: Actor, project_id: str) -> Project:
        data = tx.get(KIND_PROJECT, project_id)
        if data is None:
            raise NotFoundError(f"Project not found: {project_id}")
        project = Project.from_dict(data)
        if not actor.can_manage(project):
            raise PermissionDeniedError("Not authorized to manage this project")
        return project

    @staticmethod
    def _version_in(tx: StoreTransaction, project: Project, version_id: str) -> Version:
        data = tx.get(KIND_VERSION, version_id)
        if data is None or data.get("project_id") != project.project_id:
            raise NotFoundError(f"Version not found: {version_id}")
        return Version.from_dict(data)

    @staticmethod
    def _save_project(tx: StoreTransaction, project: Project) -> None:
        project.updated_at = utc_now_iso()
        tx.update(KIND_PROJECT, project.project_id, project.to_dict())

    def _insert_version(self, tx: StoreTransaction, version: Version) -> None:
        tx.insert(
            KIND_VERSION,
            version.version_id,
            version.to_dict(),
            parent_id=version.project_id,
            sequence=version.version_number,
        )

    def _insert_project(self, tx: StoreTransaction, project: Project) -> None:
        tx.insert(KIND_PROJECT, project.project_id, project.to_dict(), parent_id=project.owner_id)

    def get_project(self, actor: Actor, project_id: str) -> Project:
        with self.store.transaction() as tx:
            return self._project_in(tx, actor, project_id)

    def get_version(self, actor: Actor, project_id: str, version_id: str) -> Version:
        with self.store.transaction() as tx:
            project = self._project_in(tx, actor, project_id)
            return self._version_in(tx, project, version_id)

    def list_projects(self, actor: Actor) -> List[Project]:
        rows = self.store.list_by_parent(KIND_PROJECT, actor.user_id, newest_first=True)
        return [Project.from_dict(row) for row in rows]

    def list_versions(self, actor: Actor, project_id: str) -> List[Version]:
        with self.store.transaction() as tx:
            project = self._project_in(tx, actor, project_id)
            rows = tx.list_by_parent(KIND_VERSION, project.project_id, newest_first=True)
        return [Version.from_dict(row) for row in rows]

    def project_overview(self, actor: Actor, project_id: str) -> Dict[str, Any]:
        with self.store.transaction() as tx:
            project = self._project_in(tx, actor, project_id)
            version_count = tx.count_by_parent(KIND_VERSION, project_id)
            live = tx.get(KIND_VERSION, project.live_version_id) if project.live_version_id else None
        royalty_stats = None
        if project.hosting_type == HostingType.PLATFORM:
            royalty_stats = self.royalties.stats(project_id)
        return {
            "project": project.to_dict(),
            "version_count": version_count,
            "live_version": live,
            "royalty_stats": royalty_stats,
        }

    # ------------------------------------------------------------------
    # Project metadata
    # ------------------------------------------------------------------

    def create_project(self, actor: Actor, name: str, description: Optional[str] = None) -> Project:
        project = Project(
            project_id=new_id("proj"),
            owner_id=actor.user_id,
            name=_require_text(name, "Name is required"),
            description=_optional_text(description),
        )
        with self.store.transaction() as tx:
            self._insert_project(tx, project)
        logger.info("project_created", project_id=project.project_id, owner_id=actor.user_id)
        return project

    def update_project(
        self,
        actor: Actor,
        project_id: str,
        *,
        name: Any = _UNSET,
        description: Any = _UNSET,
    ) -> Project:
        if name is _UNSET and description is _UNSET:
            raise InvalidRequestError("No updates provided")
        with self.store.transaction() as tx:
            project = self._project_in(tx, actor, project_id)
            if name is not _UNSET:
                project.name = _require_text(name, "Name must be a non-empty string")
            if description is not _UNSET:
                project.description = _optional_text(description)
            self._save_project(tx, project)
        return project

    def update_branding(
        self,
        actor: Actor,
        project_id: str,
        *,
        icon_url: Any = _UNSET,
        banner_url: Any = _UNSET,
    ) -> Project:
        if icon_url is _UNSET and banner_url is _UNSET:
            raise InvalidRequestError("No branding updates provided")
        with self.store.transaction() as tx:
            project = self._project_in(tx, actor, project_id)
            if icon_url is not _UNSET:
                project.icon_url = _optional_text(icon_url)
            if banner_url is not _UNSET:
                project.banner_url = _optional_text(banner_url)
            self._save_project(tx, project)
        return project

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate(
        self,
        actor: Actor,
        prompt: str,
        project_id: Optional[str] = None,
    ) -> GenerationResult:
        """Generate a new pending version. Nothing is charged here."""
        prompt = _require_text(prompt, "Prompt is required")
        payer = actor.user_id
        if project_id is not None:
            payer = self.get_project(actor, project_id).owner_id

        cost = float(self.generation_cost)
        self.credits.ensure_available(payer, cost)

        generated = await self.generator.generate(prompt)

        with self.store.transaction() as tx:
            if project_id is None:
                project = Project(
                    project_id=new_id("proj"),
                    owner_id=actor.user_id,
                    name=generated.suggested_name,
                    description=generated.suggested_description or None,
                )
                self._insert_project(tx, project)
            else:
                project = self._project_in(tx, actor, project_id)
                changed = False
                if not project.name and generated.suggested_name:
                    project.name = generated.suggested_name
                    changed = True
                if not project.description and generated.suggested_description:
                    project.description = generated.suggested_description
                    changed = True
                if changed:
                    self._save_project(tx, project)

            version = Version(
                version_id=new_id("ver"),
                project_id=project.project_id,
                version_number=tx.next_sequence(KIND_VERSION, project.project_id),
                user_prompt=prompt,
                generated_code=generated.code,
                generated_config=generated.config,
                generation_cost=cost,
            )
            self._insert_version(tx, version)

        logger.info(
            "version_generated",
            project_id=project.project_id,
            version_id=version.version_id,
            version_number=version.version_number,
        )
        return GenerationResult(
            project=project,
            version=version,
            files=generated.files,
            suggested_name=generated.suggested_name,
            suggested_description=generated.suggested_description,
            cost=cost,
        )

    async def refine(
        self,
        actor: Actor,
        project_id: str,
        prompt: str,
        version_id: Optional[str] = None,
    ) -> RefinementResult:
        """Create a pending child of ``version_id`` (or of the latest version)."""
        prompt = _require_text(prompt, "Refinement prompt is required")

        with self.store.transaction() as tx:
            project = self._project_in(tx, actor, project_id)
            if version_id is not None:
                parent = self._version_in(tx, project, version_id)
            else:
                latest = tx.list_by_parent(KIND_VERSION, project_id, limit=1, newest_first=True)
                if not latest:
                    raise InvalidRequestError("No version to refine. Generate a version first.")
                parent = Version.from_dict(latest[0])

        cost = float(self.refinement_cost)
        self.credits.ensure_available(project.owner_id, cost)

        refined = await self.generator.refine(parent.generated_code, parent.generated_config, prompt)

        with self.store.transaction() as tx:
            project = self._project_in(tx, actor, project_id)
            version = Version(
                version_id=new_id("ver"),
                project_id=project_id,
                version_number=tx.next_sequence(KIND_VERSION, project_id),
                user_prompt=parent.user_prompt,
                refinement_prompt=prompt,
                generated_code=refined.code,
                generated_config=refined.config,
                generation_cost=cost,
                parent_version_id=parent.version_id,
            )
            self._insert_version(tx, version)

        logger.info(
            "version_refined",
            project_id=project_id,
            version_id=version.version_id,
            parent_version_id=parent.version_id,
        )
        return RefinementResult(
            project=project,
            version=version,
            files=refined.files,
            changes=refined.changes,
            cost=cost,
        )

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    async def run_tests(self, actor: Actor, project_id: str, version_id: str) -> SmokeTestReport:
        version = self.get_version(actor, project_id, version_id)
        if not version.status.can_transition_to(VersionStatus.TESTING):
            raise InvalidStateError(f"Cannot test a version that is {version.status.value}")

        report = await self.smoke_runner.run(version.generated_code, version.generated_config)

        with self.store.transaction() as tx:
            project = self._project_in(tx, actor, project_id)
            current = self._version_in(tx, project, version_id)
            if not current.status.can_transition_to(VersionStatus.TESTING):
                raise InvalidStateError(f"Cannot test a version that is {current.status.value}")
            observed = current.status
            current.status = VersionStatus.TESTING
            current.test_result = report.to_dict()
            current.updated_at = utc_now_iso()
            if not tx.compare_and_set(KIND_VERSION, version_id, "status", observed.value, current.to_dict()):
                raise InvalidStateError("Version changed while tests were running")

        logger.info("version_tested", project_id=project_id, version_id=version_id, passed=report.passed)
        return report

    def accept(self, actor: Actor, project_id: str, version_id: str) -> AcceptResult:
        """Charge ``generation_cost`` and make the version live, atomically."""
        with self.store.transaction() as tx:
            project = self._project_in(tx, actor, project_id)
            version = self._version_in(tx, project, version_id)
            observed = version.status
            if not observed.can_transition_to(VersionStatus.ACCEPTED):
                raise InvalidStateError(f"Version already {observed.value}")

            cost = float(version.generation_cost)
            balance = tx.balance(project.owner_id)
            if balance < cost:
                raise InsufficientCreditsError(required=cost, balance=balance)

            version.status = VersionStatus.ACCEPTED
            version.updated_at = utc_now_iso()
            if not tx.compare_and_set(KIND_VERSION, version_id, "status", observed.value, version.to_dict()):
                raise InvalidStateError("Version was modified concurrently")

            new_balance = self.credits.deduct(project.owner_id, cost, tx=tx)
            project.live_version_id = version.version_id
            project.status = ProjectStatus.READY
            self._save_project(tx, project)

        logger.info(
            "version_accepted",
            project_id=project_id,
            version_id=version_id,
            credits_deducted=cost,
            balance=new_balance,
        )
        return AcceptResult(project=project, version=version, credits_deducted=cost, balance=new_balance)

    def reject(self, actor: Actor, project_id: str, version_id: str) -> Version:
        with self.store.transaction() as tx:
            project = self._project_in(tx, actor, project_id)
            version = self._version_in(tx, project, version_id)
            observed = version.status
            if not observed.can_transition_to(VersionStatus.REJECTED):
                raise InvalidStateError(f"Cannot reject a version that is {observed.value}")
            version.status = VersionStatus.REJECTED
            version.updated_at = utc_now_iso()
            if not tx.compare_and_set(KIND_VERSION, version_id, "status", observed.value, version.to_dict()):
                raise InvalidStateError("Version was modified concurrently")

        logger.info("version_rejected", project_id=project_id, version_id=version_id)
        return version

    def set_live(self, actor: Actor, project_id: str, version_id: str) -> Project:
        with self.store.transaction() as tx:
            project = self._project_in(tx, actor, project_id)
            version = self._version_in(tx, project, version_id)
            if version.status != VersionStatus.ACCEPTED:
                raise InvalidStateError("Only accepted versions can be set as live")
            project.live_version_id = version.version_id
            self._save_project(tx, project)
        return project

    # ------------------------------------------------------------------
    # Distribution
    # ------------------------------------------------------------------

    def deploy(self, actor: Actor, project_id: str) -> Deployment:
        """Host the live version on the platform."""
        with self.store.transaction() as tx:
            project = self._project_in(tx, actor, project_id)
            if not project.live_version_id:
                raise InvalidStateError("No live version set. Accept a version first.")
            live = self._version_in(tx, project, project.live_version_id)

            server_url = f"{self.hosted_base_path}/{project.project_id}"
            existing = (
                tx.get(KIND_HOSTED_SERVER, project.deployed_server_id)
                if project.deployed_server_id
                else None
            )
            if existing is not None:
                server = HostedServer.from_dict(existing)
                server.name = project.name
                server.description = project.description
                server.status = "active"
                server.server_url = server_url
                server.server_config = live.generated_config
                server.updated_at = utc_now_iso()
                tx.update(KIND_HOSTED_SERVER, server.server_id, server.to_dict())
            else:
                server = HostedServer(
                    server_id=new_id("srv"),
                    owner_id=project.owner_id,
                    project_id=project.project_id,
                    name=project.name,
                    description=project.description,
                    server_url=server_url,
                    server_config=live.generated_config,
                    member_ids=[project.owner_id],
                )
                tx.insert(
                    KIND_HOSTED_SERVER,
                    server.server_id,
                    server.to_dict(),
                    parent_id=project.project_id,
                )

            project.status = ProjectStatus.DEPLOYED
            project.hosting_type = HostingType.PLATFORM
            project.deployed_server_id = server.server_id
            self._save_project(tx, project)

        logger.info("project_deployed", project_id=project_id, server_id=server.server_id)
        return Deployment(project=project, server=server)

    def export_bundle(self, actor: Actor, project_id: str) -> ExportBundle:
        """Live version source and config for self-hosting."""
        with self.store.transaction() as tx:
            project = self._project_in(tx, actor, project_id)
            if not project.live_version_id:
                raise InvalidStateError("No live version set. Accept a version first.")
            live = self._version_in(tx, project, project.live_version_id)
            if project.hosting_type != HostingType.PLATFORM:
                project.hosting_type = HostingType.SELF
                self._save_project(tx, project)

        return ExportBundle(
            entry_path=ENTRY_FILE,
            source=live.generated_code,
            config=live.generated_config,
            name=project.name,
            description=project.description,
        )

    def fork(self, actor: Actor, project_id: str, name: Optional[str] = None) -> Project:
        """Copy a project, and its live version if any, into a new free project."""
        with self.store.transaction() as tx:
            source = self._project_in(tx, actor, project_id)
            fork = Project(
                project_id=new_id("proj"),
                owner_id=actor.user_id,
                name=_optional_text(name) or f"{source.name} (Fork)",
                description=source.description,
            )
            self._insert_project(tx, fork)

            if source.live_version_id:
                live = self._version_in(tx, source, source.live_version_id)
                copy = Version(
                    version_id=new_id("ver"),
                    project_id=fork.project_id,
                    version_number=1,
                    user_prompt=live.user_prompt,
                    generated_code=live.generated_code,
                    generated_config=live.generated_config,
                    generation_cost=0.0,
                    parent_version_id=live.version_id,
                    status=VersionStatus.ACCEPTED,
                )
                self._insert_version(tx, copy)
                fork.live_version_id = copy.version_id
                fork.status = ProjectStatus.READY
                self._save_project(tx, fork)

        logger.info("project_forked", source_project_id=project_id, project_id=fork.project_id)
        return fork
