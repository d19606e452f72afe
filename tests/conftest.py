import pytest

from shares_gate.access import AccessPolicy
from shares_gate.ledger import LedgerService
from shares_gate.storage import Storage

from .fakes import FakeChain, RecordingNotifier


@pytest.fixture
def storage(tmp_path):
    s = Storage(str(tmp_path / "ledger.db"))
    yield s
    s.close()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def ledger(storage) -> LedgerService:
    return LedgerService(storage)


@pytest.fixture
def policy(storage, notifier) -> AccessPolicy:
    return AccessPolicy(storage, notifier, default_bot_token="default-token", default_chat_id="-100")


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()
