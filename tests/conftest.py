"""Shared fixtures: fast polling settings and a scripted in-memory engine."""

import pytest

from govflow.config import GovflowConfig, PollingConfig
from govflow.contracts import Identity
from govflow.engines import ApprovalStep, FormStep, InMemoryEngine, WorkflowDefinition
from govflow.session import SessionManager

FAST_POLLING = dict(
    work_item_interval=0.01,
    case_interval=0.01,
    settle_interval=0.01,
    work_item_timeout=0.1,
    task_interval=0.01,
    max_approval_levels=5,
)

IDENTITIES = [
    Identity(name="manager", display_name="Mary Manager"),
    Identity(name="app.owner", display_name="Owen Owner"),
    Identity(name="security"),
]


def _definitions():
    return [
        WorkflowDefinition(
            name="Three Level Approval",
            steps=[
                ApprovalStep(owner="manager"),
                ApprovalStep(owner="app.owner"),
                ApprovalStep(owner="security"),
            ],
        ),
        WorkflowDefinition(
            name="Activate Identity",
            steps=[
                FormStep(owner="spadmin", fields={"reason": None}),
                ApprovalStep(owner="manager"),
                ApprovalStep(owner="app.owner"),
                ApprovalStep(owner="security"),
            ],
        ),
        WorkflowDefinition(name="Instant", steps=[]),
    ]


@pytest.fixture
def make_config():
    def factory(profile="test", **polling):
        values = dict(FAST_POLLING)
        values.update(polling)
        return GovflowConfig(
            profile=profile, environment_name="UNIT", polling=PollingConfig(**values)
        )

    return factory


@pytest.fixture
def config(make_config):
    return make_config()


@pytest.fixture
def make_engine():
    def factory(definitions=None, **kwargs):
        return InMemoryEngine(
            definitions=_definitions() + list(definitions or []),
            identities=list(IDENTITIES),
            **kwargs,
        )

    return factory


@pytest.fixture
def engine(make_engine):
    return make_engine()


@pytest.fixture
def make_session():
    created = []

    def factory(config, engine):
        manager = SessionManager(config, engine=engine)
        manager.setup()
        created.append(manager)
        return manager

    yield factory
    for manager in created:
        manager.close()


@pytest.fixture
def session(make_session, config, engine):
    return make_session(config, engine)
