"""Shared pytest fixtures for zapdesk tests."""
import sys
sys.dont_write_bytecode = True

import pytest  # noqa: E402

from fakes import (  # noqa: E402
    ORG_ID,
    OTHER_ORG_ID,
    OPERATOR_ID,
    OTHER_OPERATOR_ID,
    FakeContactRepository,
    FakeConversationRepository,
    FakeInstanceRepository,
    FakeMessageRepository,
    FakeUserRepository,
    RecordingEmitter,
)
from zapdesk.domain.models import Instance  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_oidc_jwks_cache():
    """Reset the module-level JWKS cache between tests."""
    import zapdesk.api.auth as auth_module

    auth_module._jwks_cache = None
    auth_module._jwks_cache_time = 0
    yield
    auth_module._jwks_cache = None
    auth_module._jwks_cache_time = 0


@pytest.fixture
def org_id():
    return ORG_ID


@pytest.fixture
def instance():
    return Instance(
        id="inst-1",
        organization_id=ORG_ID,
        name="Atendimento",
        instance_name="atendimento-01",
        status="open",
    )


@pytest.fixture
def contacts():
    return FakeContactRepository()


@pytest.fixture
def conversations():
    return FakeConversationRepository()


@pytest.fixture
def messages():
    return FakeMessageRepository()


@pytest.fixture
def instances(instance):
    return FakeInstanceRepository(instance)


@pytest.fixture
def users():
    return FakeUserRepository(
        {
            ORG_ID: [OPERATOR_ID, OTHER_OPERATOR_ID],
            OTHER_ORG_ID: ["user-outsider"],
        }
    )


@pytest.fixture
def emitter():
    return RecordingEmitter()
