import os
import logging

from starlette.datastructures import Headers
from starlette.responses import PlainTextResponse
from starlette.testclient import TestClient

from conftest import USER
from micropub_adapter import (
    ErrorCode,
    ForwardedHeadersMiddleware,
    MicropubCallbacks,
    RequestContext,
    Settings,
    create_app,
    granted_scopes,
    has_scope,
    require_scope,
)

ENV_VARS = (
    "MICROPUB_PATH",
    "MICROPUB_MEDIA_PATH",
    "MICROPUB_TRUST_FORWARDED",
    "MICROPUB_DEBUG",
    "MICROPUB_LOG_LEVEL",
)


def clear_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_settings_defaults(monkeypatch, tmp_path):
    clear_env(monkeypatch)
    monkeypatch.chdir(tmp_path)
    assert Settings.from_env() == Settings()


def test_settings_from_env(monkeypatch, tmp_path):
    clear_env(monkeypatch)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("MICROPUB_PATH", "/pub")
    monkeypatch.setenv("MICROPUB_MEDIA_PATH", "/pub/media")
    monkeypatch.setenv("MICROPUB_TRUST_FORWARDED", "yes")
    monkeypatch.setenv("MICROPUB_DEBUG", "0")
    monkeypatch.setenv("MICROPUB_LOG_LEVEL", "debug")
    assert Settings.from_env() == Settings(
        micropub_path="/pub",
        media_path="/pub/media",
        trust_forwarded=True,
        debug=False,
        log_level="DEBUG",
    )


def test_settings_from_dotenv_file(monkeypatch, tmp_path):
    clear_env(monkeypatch)
    monkeypatch.chdir(tmp_path)
    (tmp_path / ".env").write_text("MICROPUB_PATH=/from-dotenv\n")
    try:
        assert Settings.from_env().micropub_path == "/from-dotenv"
    finally:
        os.environ.pop("MICROPUB_PATH", None)


def test_custom_paths(make_client, recorder):
    client = make_client(
        settings=Settings(micropub_path="/pub", media_path="/upload"),
        config_query=recorder("config_query", {"media-endpoint": "/upload"}),
    )
    r = client.get("/pub", params={"q": "config"}, headers={"Authorization": "Bearer tok"})
    assert r.json() == {"media-endpoint": "/upload"}
    assert client.get("/micropub", params={"q": "config"}).status_code == 404


def test_forwarded_authorization_needs_trust(make_client, recorder):
    headers = {"X-Authorization": "Bearer fwd", "X-Forwarded-Host": "example.com"}
    client = make_client()
    assert client.get("/micropub", params={"q": "config"}, headers=headers).status_code == 401

    hosts = []

    def config_query(ctx, params):
        hosts.append(ctx.request.headers["host"])
        return {}

    client = make_client(settings=Settings(trust_forwarded=True), config_query=config_query)
    r = client.get("/micropub", params={"q": "config"}, headers=headers)
    assert r.status_code == 200
    assert recorder.args("verify_access_token") == [("fwd",)]
    assert hosts == ["example.com"]


def test_scopes_from_space_separated_string():
    ctx = RequestContext(request=None, user=USER)
    assert granted_scopes(USER) == {"create", "update"}
    assert has_scope(ctx, "create")
    assert has_scope(ctx, "create", "update")
    assert not has_scope(ctx, "delete")


def test_scopes_from_list():
    ctx = RequestContext(request=None, user={"scopes": ["media", 5]})
    assert granted_scopes(ctx.user) == {"media"}
    assert require_scope(ctx, "media") is None


def test_require_scope_without_user(caplog):
    ctx = RequestContext(request=None, logger=logging.getLogger("micropub_adapter"))
    with caplog.at_level(logging.WARNING, logger="micropub_adapter"):
        assert require_scope(ctx, "delete") is ErrorCode.INSUFFICIENT_SCOPE
    assert "delete" in caplog.text


def test_unknown_log_level_falls_back(monkeypatch, tmp_path):
    clear_env(monkeypatch)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("MICROPUB_LOG_LEVEL", "verbose")
    assert Settings.from_env().log_level == "INFO"


def test_create_app_tolerates_bad_log_level():
    logger = logging.getLogger("micropub_adapter")
    previous = logger.level
    logger.setLevel(logging.NOTSET)
    try:
        create_app(MicropubCallbacks(verify_access_token=lambda ctx, token: USER), settings=Settings(log_level="verbose"))
        assert logger.level == logging.INFO
    finally:
        logger.setLevel(previous)


def test_create_app_keeps_configured_log_level():
    logger = logging.getLogger("micropub_adapter")
    previous = logger.level
    logger.setLevel(logging.WARNING)
    try:
        for level in ("DEBUG", "ERROR"):
            create_app(MicropubCallbacks(verify_access_token=lambda ctx, token: USER), settings=Settings(log_level=level))
        assert logger.level == logging.WARNING
    finally:
        logger.setLevel(previous)


def test_forwarded_header_renames_are_configurable():
    seen = []

    async def app(scope, receive, send):
        seen.append(Headers(scope=scope))
        await PlainTextResponse("ok")(scope, receive, send)

    wrapped = ForwardedHeadersMiddleware(app, renames={"x-original-auth": "authorization"})
    TestClient(wrapped).get("/", headers={"X-Original-Auth": "Bearer abc", "X-Authorization": "Bearer other"})
    assert seen[0]["authorization"] == "Bearer abc"
