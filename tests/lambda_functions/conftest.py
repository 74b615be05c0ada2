import pytest
from moto import mock_aws

@pytest.fixture()
def setup_env(monkeypatch):
    def _set_envs(env_vars: dict):
        """ Set the default env vars for the lambda """
        for k, v in env_vars.items():
            monkeypatch.setenv(k, v)
    return _set_envs

@pytest.fixture()
def mocked_aws():
    """ Every boto3 client made while this is active talks to moto """
    with mock_aws():
        yield
