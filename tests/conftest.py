"""Configure pytest fixtures and environment for the pipeline tests."""

import pytest
from dotenv import load_dotenv

from substack_intel.core import config as config_module
from substack_intel.core.models import NormalizedContent
from substack_intel.data import db as db_module
from substack_intel.data.db import create_engine_for_url, init_db
from substack_intel.data.store import PipelineStore
from substack_intel.intelligence.html_parser import ContentNormalizer
from substack_intel.utils import reliability

from sample_data import make_message, make_settings


def pytest_sessionstart(session):
    """Load environment variables from a local .env if present."""
    load_dotenv()


@pytest.fixture(autouse=True)
def isolate_globals(monkeypatch):
    """Fresh settings, engine cache and circuit breakers for every test."""
    monkeypatch.setattr(config_module, "settings", None)
    monkeypatch.setattr(db_module, "_engines", {})
    reliability._breakers.clear()
    yield
    reliability._breakers.clear()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def engine():
    engine = create_engine_for_url("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    return PipelineStore(engine, "default")


@pytest.fixture
def seed_emails(store):
    """Store ``count`` sample emails and return their rows, oldest first."""

    def _seed(count=1, target=None, **message_kwargs):
        target = target or store
        normalizer = ContentNormalizer()
        messages = [make_message(i, **message_kwargs) for i in range(1, count + 1)]
        target.save_messages((m, normalizer.normalize(m)) for m in messages)
        return [target.get_email_by_message_id(m.message_id) for m in messages]

    return _seed


@pytest.fixture
def email_id(store):
    """A single stored email for resolver-level tests."""
    message = make_message(1)
    store.save_messages([(message, NormalizedContent(clean_text="text", newsletter_name="Daily Brief"))])
    return store.get_email_by_message_id(message.message_id).id
