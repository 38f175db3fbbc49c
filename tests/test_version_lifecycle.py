"""Version lifecycle tests: generate, test, accept, deploy and credits."""

import pytest

from serverforge.domain.errors import (
    InsufficientCreditsError,
    InvalidRequestError,
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
)
from serverforge.domain.models import (
    Actor,
    ActorRole,
    HostingType,
    ProjectStatus,
    VersionStatus,
)
from serverforge.kernel.sandbox import SandboxEngine, UnconfinedBackend
from serverforge.kernel.verification import SmokeTestRunner
from serverforge.services.code_generation_service import GeneratedServer, RefinedServer
from serverforge.services.credit_ledger import CreditLedger
from serverforge.services.record_store import KIND_VERSION, RecordStore
from serverforge.services.royalty_service import RoyaltyLedger
from serverforge.services.version_lifecycle_service import VersionLifecycleService

HANDLER = """
module.exports = async (req, res) => {
  if (req.method === 'POST') {
    res.setHeader('X-Image-Width', '1024');
    res.setHeader('Content-Type', 'image/png');
    res.end(Buffer.from([1, 2, 3]));
    return;
  }
  res.json({ name: 'Plasma', methods: ['GET', 'POST'] });
};
"""

OWNER = Actor(user_id="user_owner")
STRANGER = Actor(user_id="user_stranger")
ADMIN = Actor(user_id="user_admin", role=ActorRole.ADMIN)


class FakeGenerator:
    """Records calls and returns fixed generations."""

    def __init__(self):
        self.generate_calls = []
        self.refine_calls = []

    async def generate(self, description):
        self.generate_calls.append(description)
        return GeneratedServer(
            code=HANDLER,
            config={"methods": {"POST": {"returns": "image/png"}}},
            files={"api/index.js": HANDLER},
            suggested_name="Plasma Waves",
            suggested_description="Neon plasma",
        )

    async def refine(self, existing_code, existing_config, prompt):
        self.refine_calls.append(prompt)
        code = existing_code.replace("Plasma", "Plasma v2")
        return RefinedServer(
            code=code,
            config=existing_config,
            files={"api/index.js": code},
            changes=[prompt],
        )


@pytest.fixture
def store(tmp_path):
    return RecordStore(tmp_path / "records.db")


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def service(store, generator, tmp_path):
    engine = SandboxEngine(UnconfinedBackend(scratch_root=tmp_path / "scratch"))
    return VersionLifecycleService(
        store,
        generator=generator,
        smoke_runner=SmokeTestRunner(engine),
        generation_cost=20,
        refinement_cost=10,
        hosted_base_path="/api/v1/hosted/",
    )


@pytest.fixture
def credits(store):
    return CreditLedger(store)


@pytest.mark.asyncio
async def test_full_lifecycle_charges_once_on_accept(service, credits, generator, store):
    credits.grant(OWNER.user_id, 25)

    generated = await service.generate(OWNER, "neon plasma waves")
    project, version = generated.project, generated.version

    assert project.name == "Plasma Waves"
    assert project.status == ProjectStatus.DRAFT
    assert version.version_number == 1
    assert version.status == VersionStatus.PENDING
    assert version.generation_cost == 20
    assert credits.balance(OWNER.user_id) == 25
    assert generated.to_dict()["note"] == "Credits will be deducted when you accept this version"

    report = await service.run_tests(OWNER, project.project_id, version.version_id)
    assert report.passed
    tested = service.get_version(OWNER, project.project_id, version.version_id)
    assert tested.status == VersionStatus.TESTING
    assert tested.test_result["passed"] is True

    accepted = service.accept(OWNER, project.project_id, version.version_id)
    assert accepted.credits_deducted == 20
    assert accepted.balance == 5
    assert accepted.version.status == VersionStatus.ACCEPTED
    assert accepted.project.live_version_id == version.version_id
    assert accepted.project.status == ProjectStatus.READY
    assert credits.balance(OWNER.user_id) == 5

    deployment = service.deploy(OWNER, project.project_id)
    assert deployment.server_url == f"/api/v1/hosted/{project.project_id}"
    assert deployment.project.status == ProjectStatus.DEPLOYED
    assert deployment.project.hosting_type == HostingType.PLATFORM
    assert deployment.server.member_ids == [OWNER.user_id]
    assert credits.balance(OWNER.user_id) == 5

    # Refinement costs 10, more than the remaining 5.
    with pytest.raises(InsufficientCreditsError) as excinfo:
        await service.refine(OWNER, project.project_id, "make it blue")
    assert excinfo.value.required == 10
    assert excinfo.value.balance == 5
    assert generator.refine_calls == []
    assert len(store.list_by_parent(KIND_VERSION, project.project_id)) == 1


@pytest.mark.asyncio
async def test_generate_without_credits_creates_nothing(service, generator):
    with pytest.raises(InsufficientCreditsError):
        await service.generate(OWNER, "anything")

    assert generator.generate_calls == []
    assert service.list_projects(OWNER) == []


@pytest.mark.asyncio
async def test_generate_rejects_blank_prompt(service, credits):
    credits.grant(OWNER.user_id, 100)
    with pytest.raises(InvalidRequestError):
        await service.generate(OWNER, "   ")


@pytest.mark.asyncio
async def test_generate_into_existing_project_numbers_versions(service, credits):
    credits.grant(OWNER.user_id, 100)
    project = service.create_project(OWNER, "Manual", "hand made")

    first = await service.generate(OWNER, "first", project_id=project.project_id)
    second = await service.generate(OWNER, "second", project_id=project.project_id)

    assert first.project.name == "Manual"
    assert [first.version.version_number, second.version.version_number] == [1, 2]
    listed = service.list_versions(OWNER, project.project_id)
    assert [v.version_number for v in listed] == [2, 1]


@pytest.mark.asyncio
async def test_refine_creates_child_version(service, credits):
    credits.grant(OWNER.user_id, 100)
    generated = await service.generate(OWNER, "plasma")
    project_id = generated.project.project_id

    refined = await service.refine(OWNER, project_id, "faster animation")

    assert refined.version.version_number == 2
    assert refined.version.parent_version_id == generated.version.version_id
    assert refined.version.refinement_prompt == "faster animation"
    assert refined.version.user_prompt == "plasma"
    assert refined.version.generation_cost == 10
    assert "Plasma v2" in refined.version.generated_code
    assert refined.changes == ["faster animation"]
    assert credits.balance(OWNER.user_id) == 100

    accepted = service.accept(OWNER, project_id, refined.version.version_id)
    assert accepted.credits_deducted == 10
    assert accepted.balance == 90


@pytest.mark.asyncio
async def test_refine_without_versions(service, credits):
    credits.grant(OWNER.user_id, 100)
    project = service.create_project(OWNER, "Empty")
    with pytest.raises(InvalidRequestError, match="Generate a version first"):
        await service.refine(OWNER, project.project_id, "tweak")


@pytest.mark.asyncio
async def test_accept_is_charged_exactly_once(service, credits):
    credits.grant(OWNER.user_id, 100)
    generated = await service.generate(OWNER, "plasma")
    ids = (generated.project.project_id, generated.version.version_id)

    service.accept(OWNER, *ids)
    with pytest.raises(InvalidStateError):
        service.accept(OWNER, *ids)

    assert credits.balance(OWNER.user_id) == 80


@pytest.mark.asyncio
async def test_accept_with_insufficient_credits_changes_nothing(service, credits):
    credits.grant(OWNER.user_id, 20)
    generated = await service.generate(OWNER, "plasma")
    credits.deduct(OWNER.user_id, 15)

    with pytest.raises(InsufficientCreditsError):
        service.accept(OWNER, generated.project.project_id, generated.version.version_id)

    version = service.get_version(OWNER, generated.project.project_id, generated.version.version_id)
    assert version.status == VersionStatus.PENDING
    assert service.get_project(OWNER, generated.project.project_id).live_version_id is None
    assert credits.balance(OWNER.user_id) == 5


@pytest.mark.asyncio
async def test_terminal_versions_are_immutable(service, credits):
    credits.grant(OWNER.user_id, 100)
    generated = await service.generate(OWNER, "plasma")
    ids = (generated.project.project_id, generated.version.version_id)

    rejected = service.reject(OWNER, *ids)
    assert rejected.status == VersionStatus.REJECTED

    with pytest.raises(InvalidStateError):
        service.accept(OWNER, *ids)
    with pytest.raises(InvalidStateError):
        service.reject(OWNER, *ids)
    with pytest.raises(InvalidStateError):
        await service.run_tests(OWNER, *ids)
    with pytest.raises(InvalidStateError, match="Only accepted versions"):
        service.set_live(OWNER, *ids)
    assert credits.balance(OWNER.user_id) == 100


@pytest.mark.asyncio
async def test_tests_can_be_rerun(service, credits):
    credits.grant(OWNER.user_id, 100)
    generated = await service.generate(OWNER, "plasma")
    ids = (generated.project.project_id, generated.version.version_id)

    await service.run_tests(OWNER, *ids)
    await service.run_tests(OWNER, *ids)

    assert service.get_version(OWNER, *ids).status == VersionStatus.TESTING


@pytest.mark.asyncio
async def test_access_control(service, credits):
    credits.grant(OWNER.user_id, 100)
    generated = await service.generate(OWNER, "plasma")
    ids = (generated.project.project_id, generated.version.version_id)

    with pytest.raises(PermissionDeniedError):
        service.get_project(STRANGER, ids[0])
    with pytest.raises(PermissionDeniedError):
        service.accept(STRANGER, *ids)
    with pytest.raises(NotFoundError):
        service.get_project(OWNER, "proj_missing")
    with pytest.raises(NotFoundError):
        service.get_version(OWNER, ids[0], "ver_missing")

    # Admins act on the owner's project and the owner pays.
    accepted = service.accept(ADMIN, *ids)
    assert accepted.balance == 80
    assert credits.balance(ADMIN.user_id) == 0


@pytest.mark.asyncio
async def test_deploy_requires_live_version_and_redeploy_reuses_server(service, credits):
    credits.grant(OWNER.user_id, 100)
    generated = await service.generate(OWNER, "plasma")
    project_id = generated.project.project_id

    with pytest.raises(InvalidStateError, match="No live version"):
        service.deploy(OWNER, project_id)

    service.accept(OWNER, project_id, generated.version.version_id)
    first = service.deploy(OWNER, project_id)
    service.update_project(OWNER, project_id, name="Renamed")
    second = service.deploy(OWNER, project_id)

    assert second.server.server_id == first.server.server_id
    assert second.server.name == "Renamed"


@pytest.mark.asyncio
async def test_set_live_switches_between_accepted_versions(service, credits):
    credits.grant(OWNER.user_id, 100)
    generated = await service.generate(OWNER, "plasma")
    project_id = generated.project.project_id
    refined = await service.refine(OWNER, project_id, "v2")

    service.accept(OWNER, project_id, generated.version.version_id)
    service.accept(OWNER, project_id, refined.version.version_id)
    assert service.get_project(OWNER, project_id).live_version_id == refined.version.version_id

    project = service.set_live(OWNER, project_id, generated.version.version_id)
    assert project.live_version_id == generated.version.version_id


@pytest.mark.asyncio
async def test_export_marks_self_hosting_unless_deployed(service, credits):
    credits.grant(OWNER.user_id, 100)
    generated = await service.generate(OWNER, "plasma")
    project_id = generated.project.project_id

    with pytest.raises(InvalidStateError):
        service.export_bundle(OWNER, project_id)

    service.accept(OWNER, project_id, generated.version.version_id)
    bundle = service.export_bundle(OWNER, project_id)

    assert bundle.entry_path == "api/index.js"
    assert bundle.source == HANDLER
    assert bundle.package_name == "plasma-waves"
    assert service.get_project(OWNER, project_id).hosting_type == HostingType.SELF

    service.deploy(OWNER, project_id)
    service.export_bundle(OWNER, project_id)
    assert service.get_project(OWNER, project_id).hosting_type == HostingType.PLATFORM


@pytest.mark.asyncio
async def test_fork_copies_live_version_for_free(service, credits, store):
    credits.grant(OWNER.user_id, 100)
    generated = await service.generate(OWNER, "plasma")
    project_id = generated.project.project_id
    service.accept(OWNER, project_id, generated.version.version_id)

    fork = service.fork(OWNER, project_id)

    assert fork.name == "Plasma Waves (Fork)"
    assert fork.project_id != project_id
    assert fork.status == ProjectStatus.READY
    copied = service.get_version(OWNER, fork.project_id, fork.live_version_id)
    assert copied.status == VersionStatus.ACCEPTED
    assert copied.generation_cost == 0
    assert copied.version_number == 1
    assert copied.parent_version_id == generated.version.version_id
    assert credits.balance(OWNER.user_id) == 80

    named = service.fork(OWNER, project_id, name="Mine")
    assert named.name == "Mine"


def test_fork_without_live_version(service):
    project = service.create_project(OWNER, "Draft only")
    fork = service.fork(OWNER, project.project_id)

    assert fork.live_version_id is None
    assert fork.status == ProjectStatus.DRAFT


def test_metadata_updates(service):
    project = service.create_project(OWNER, "Name", "desc")

    with pytest.raises(InvalidRequestError):
        service.update_project(OWNER, project.project_id)
    with pytest.raises(InvalidRequestError):
        service.update_project(OWNER, project.project_id, name="  ")
    updated = service.update_project(OWNER, project.project_id, description="")
    assert updated.description is None
    assert updated.name == "Name"

    branded = service.update_branding(OWNER, project.project_id, icon_url="https://x/icon.png", banner_url="")
    assert branded.icon_url == "https://x/icon.png"
    assert branded.banner_url is None
    with pytest.raises(InvalidRequestError):
        service.update_branding(OWNER, project.project_id)


@pytest.mark.asyncio
async def test_project_overview_includes_royalties_when_hosted(service, credits, store):
    credits.grant(OWNER.user_id, 100)
    generated = await service.generate(OWNER, "plasma")
    project_id = generated.project.project_id

    overview = service.project_overview(OWNER, project_id)
    assert overview["version_count"] == 1
    assert overview["live_version"] is None
    assert overview["royalty_stats"] is None

    service.accept(OWNER, project_id, generated.version.version_id)
    service.deploy(OWNER, project_id)
    RoyaltyLedger(store).record(project_id, "img_1", 4)

    overview = service.project_overview(OWNER, project_id)
    assert overview["live_version"]["version_id"] == generated.version.version_id
    assert overview["royalty_stats"]["total_royalties"] == 1
    assert overview["royalty_stats"]["total_creator_share"] == 2.0


def test_list_projects_is_scoped_to_owner(service):
    service.create_project(OWNER, "Mine")
    service.create_project(STRANGER, "Theirs")

    assert [p.name for p in service.list_projects(OWNER)] == ["Mine"]
