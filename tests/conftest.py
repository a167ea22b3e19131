import pytest

from crmflow.config import EngineConfig, RetryConfig
from crmflow.contracts import DefinitionStatus, WorkflowDefinition
from crmflow.definitions import InMemoryDefinitionStore
from crmflow.engine import WorkflowEngine
from crmflow.persistence import InMemoryExecutionRepository
from crmflow.transports.inmemory import InMemoryTransport

TENANT = "acme"


@pytest.fixture
def store():
    return InMemoryDefinitionStore()


@pytest.fixture
def repo():
    return InMemoryExecutionRepository()


@pytest.fixture
def transport():
    return InMemoryTransport()


@pytest.fixture
def engine_config():
    # No backoff so retry tests run instantly.
    return EngineConfig(
        worker_id="test-worker",
        retry=RetryConfig(max_attempts=3, backoff_base=0, backoff_jitter=0),
        step_timeout=5.0,
        condition_timeout=1.0,
    )


@pytest.fixture
def engine(store, repo, transport, engine_config):
    return WorkflowEngine(store, repo, transport, engine_config)


@pytest.fixture
def publish(store):
    """Add a published definition built from step dicts and return it."""

    def _publish(name, steps, tenant_id=TENANT, **fields):
        definition = WorkflowDefinition(
            tenant_id=tenant_id,
            name=name,
            steps=steps,
            status=DefinitionStatus.PUBLISHED,
            **fields,
        )
        store.add_definition(definition)
        return definition

    return _publish
