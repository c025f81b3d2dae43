import pytest
from starlette.testclient import TestClient

from micropub_adapter import MicropubCallbacks, Settings, create_app

USER = {"me": "https://example.com/", "client_id": "https://app.example/", "scope": "create update"}
AUTH = {"Authorization": "Bearer tok"}


class Recorder(object):
    """Builds callbacks that remember their arguments and return a canned result."""

    def __init__(self):
        self.calls = []

    def __call__(self, name, result=None):
        def callback(ctx, *args):
            self.calls.append((name, args))
            return result

        return callback

    def names(self):
        return [name for name, _ in self.calls]

    def args(self, name):
        return [args for n, args in self.calls if n == name]


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def make_client(recorder):
    def make(settings=None, **overrides):
        callbacks = {"verify_access_token": recorder("verify_access_token", USER)}
        callbacks.update(overrides)
        app = create_app(MicropubCallbacks(**callbacks), settings=settings or Settings())
        return TestClient(app)

    return make
