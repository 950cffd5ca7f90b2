import pytest

from fakes import CountingConnector, FakeToolSession, scripted_inference
from triage_agent.services.triage_service import TriageService
from triage_agent.tools.remote_client import RemoteToolClient


@pytest.fixture
def tool_session():
    return FakeToolSession()


@pytest.fixture
def connector(tool_session):
    return CountingConnector(tool_session)


@pytest.fixture
def remote_client(connector):
    return RemoteToolClient(connector=connector)


@pytest.fixture
def inference():
    return scripted_inference()


@pytest.fixture
def announcements():
    return []


@pytest.fixture
def announce(announcements):
    async def _announce(message: str) -> None:
        announcements.append(message)
    return _announce


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def service(remote_client, inference, sleeps):
    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return TriageService(
        client=remote_client,
        inference=inference,
        sleep=fake_sleep,
        metrics_file=None,
    )
