import pytest

from flowgate import WorkflowEngine
from flowgate.config import EngineConfig, FlowgateConfig
from flowgate.contracts import StepKind, StepSpec, WorkflowDefinition
from flowgate.datastore import InMemoryDataStore
from flowgate.integrations import RecordingIntegrationClient
from flowgate.locks import InMemoryRunLock
from flowgate.persistence import InMemoryWorkflowRepository

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"


@pytest.fixture
def config():
    return FlowgateConfig(engine=EngineConfig(callback_secret="test-secret"))


@pytest.fixture
def repository():
    return InMemoryWorkflowRepository()


@pytest.fixture
def data_store():
    return InMemoryDataStore()


@pytest.fixture
def voice():
    return RecordingIntegrationClient()


@pytest.fixture
def engine(config, repository, data_store, voice):
    return WorkflowEngine(
        repository=repository,
        data_store=data_store,
        integrations={"voice": voice},
        config=config,
        run_lock=InMemoryRunLock(),
    )


@pytest.fixture
def project_workflow():
    """create_task -> manager approval -> notify, fired on project_created."""
    return WorkflowDefinition(
        id="project-onboarding",
        tenant_id=TENANT,
        name="Project onboarding",
        trigger_type="project_created",
        steps=[
            StepSpec(
                position=1,
                kind=StepKind.ACTION,
                name="create_task",
                config={"action": "create_task", "title": "Kickoff for {{project_name}}"},
            ),
            StepSpec(
                position=2,
                kind=StepKind.APPROVAL,
                name="manager_signoff",
                config={"approver_id": "manager-1", "instructions": "Sign off {{project_name}}"},
            ),
            StepSpec(
                position=3,
                kind=StepKind.ACTION,
                name="send_notification",
                config={
                    "action": "send_notification",
                    "recipient_id": "owner-1",
                    "message": "{{project_name}} approved",
                },
            ),
        ],
    )
