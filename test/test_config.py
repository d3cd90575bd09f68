import importlib

import pytest
from job_status_poller import config


@pytest.fixture
def reload_config(monkeypatch):
    yield monkeypatch
    monkeypatch.undo()
    importlib.reload(config)


def test_base_url_from_environment(reload_config):
    reload_config.setenv("JOB_API_BASE_URL", "http://jobs.internal:9000")

    importlib.reload(config)

    assert config.API_BASE_URL == "http://jobs.internal:9000"


def test_token_provider_reads_environment(monkeypatch):
    monkeypatch.setenv("JOB_API_TOKEN", "abc")
    assert config.env_token_provider() == "abc"

    monkeypatch.setenv("JOB_API_TOKEN", "")
    assert config.env_token_provider() is None
