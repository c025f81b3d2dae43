"""Micropub and media endpoint request handling for Starlette.

Build a :class:`MicropubCallbacks` with the operations your site supports,
then either mount ``create_app(callbacks)`` or call
``MicropubAdapter(callbacks).handle_request(request)`` from your own endpoint.
"""

import os
import enum
import json
import typing
import inspect
import logging
import dataclasses
from typing import Any, Callable, Mapping, Optional, Tuple
from dotenv import find_dotenv, load_dotenv
from python_multipart.multipart import parse_options_header
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import Headers, MutableHeaders, UploadFile
from starlette.exceptions import HTTPException
from starlette.formparsers import MultiPartException
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import Response, JSONResponse
from starlette.routing import Route
from starlette.types import ASGIApp, Receive, Scope, Send

log = logging.getLogger("micropub_adapter")


class ErrorCode(str, enum.Enum):
    INVALID_REQUEST = "invalid_request"
    UNAUTHORIZED = "unauthorized"
    INSUFFICIENT_SCOPE = "insufficient_scope"
    FORBIDDEN = "forbidden"

    @property
    def status(self) -> int:
        return ERROR_STATUSES[self]

    @property
    def description(self) -> str:
        return ERROR_DESCRIPTIONS[self]


ERROR_STATUSES = {
    ErrorCode.INVALID_REQUEST: 400,
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.INSUFFICIENT_SCOPE: 403,
    ErrorCode.FORBIDDEN: 403,
}
ERROR_DESCRIPTIONS = {
    ErrorCode.INVALID_REQUEST: "The request was invalid.",
    ErrorCode.UNAUTHORIZED: "The request did not provide an access token.",
    ErrorCode.INSUFFICIENT_SCOPE: "Your access token does not grant the scope required for this action.",
    ErrorCode.FORBIDDEN: "The authenticated user does not have permission to perform this request.",
}
ACCESS_TOKEN_INVALID = "The provided access token could not be verified."
MISSING_URL = "The request did not provide the required url parameter."
POST_NOT_FOUND = "A post with the given URL could not be found."
NOT_IMPLEMENTED = "This functionality is not implemented."
UPDATE_OPERATIONS = ("replace", "add", "delete")
FORM_CONTENT_TYPES = (b"application/x-www-form-urlencoded", b"multipart/form-data")


def error_code(value: Any) -> Optional[ErrorCode]:
    if not isinstance(value, str):
        return None
    try:
        return ErrorCode(value)
    except ValueError:
        return None


def error_payload(code: ErrorCode, description: str = None) -> dict:
    return {
        "error": code.value,
        "error_description": description or code.description,
    }


# Operation results. Callbacks may return these directly, or plain values
# which as_result() lifts into them.


@dataclasses.dataclass(frozen=True)
class Empty:
    def __bool__(self):
        return False


@dataclasses.dataclass(frozen=True)
class Success:
    pass


@dataclasses.dataclass(frozen=True)
class Payload:
    data: Any

    def __bool__(self):
        return bool(self.data)


@dataclasses.dataclass(frozen=True)
class Location:
    url: str

    def __bool__(self):
        return bool(self.url)


@dataclasses.dataclass(frozen=True)
class RawResponse:
    response: Response


Result = typing.Union[Empty, Success, ErrorCode, Payload, Location, RawResponse]
RESULT_TYPES = (Empty, Success, ErrorCode, Payload, Location, RawResponse)


def as_result(value: Any) -> Result:
    """Lift a plain callback return value into a :data:`Result` variant.

    Strings are the ambiguous case: one naming an error code is that error,
    any other string is taken as the location of a resource.
    """
    if isinstance(value, RESULT_TYPES):
        return value
    if isinstance(value, Response):
        return RawResponse(value)
    if value is None:
        return Empty()
    if value is True:
        return Success()
    if isinstance(value, str):
        code = error_code(value)
        if code is not None:
            return code
        return Location(value)
    return Payload(value)


def to_response(result: Any, status_code: int = 200) -> Response:
    result = as_result(result)
    if isinstance(result, RawResponse):
        return result.response
    if isinstance(result, ErrorCode):
        result = Payload(error_payload(result))
    if isinstance(result, Empty):
        return JSONResponse({}, status_code=status_code)
    if isinstance(result, Payload):
        data = result.data
        if isinstance(data, Mapping):
            code = error_code(data.get("error"))
            if code is not None:
                status_code = code.status
        return JSONResponse(data, status_code=status_code)
    if isinstance(result, Location):
        return JSONResponse(result.url, status_code=status_code)
    return JSONResponse(True, status_code=status_code)


def created(location: str) -> Response:
    return Response(None, headers={"location": location}, status_code=201)


def no_content() -> Response:
    return Response(None, status_code=204)


def get_access_token(headers: Headers, body: Any = None) -> Optional[str]:
    for value in headers.getlist("authorization"):
        if value[:7].lower() == "bearer ":
            return value[7:]
    if isinstance(body, Mapping) and isinstance(body.get("access_token"), str):
        return body["access_token"]
    return None


def normalize_form_create(fields: Mapping[str, Any]) -> dict:
    """Turn flat form fields into a canonical ``{type, properties}`` item."""
    item = {"type": ["h-entry"], "properties": {}}
    for k, v in fields.items():
        if k == "h":
            if isinstance(v, list):
                # h[]=... arrives as a list; last value wins like plain keys
                v = v[-1] if v else "entry"
            item["type"] = ["h-" + str(v)]
        elif isinstance(v, list):
            item["properties"][k] = v
        else:
            item["properties"][k] = [v]
    return item


def split_multi_items(items: typing.Iterable[Tuple[str, Any]]) -> Tuple[dict, dict]:
    fields = {}
    files = {}
    for k, v in items:
        target = files if isinstance(v, UploadFile) else fields
        if k.endswith("[]"):
            k = k[:-2]
            if not isinstance(target.get(k), list):
                target[k] = []
            target[k].append(v)
        else:
            target[k] = v
    return fields, files


class ParsedBody(typing.NamedTuple):
    data: Any
    files: dict
    is_json: bool


async def read_body(request: Request) -> ParsedBody:
    """Parse a POST body into a mapping, or ``None`` when it is not one.

    JSON is recognised by media type, so ``application/json; charset=utf-8``
    is JSON too. Form and multipart bodies are flattened with
    :func:`split_multi_items`; any other content type has no parsed body.
    """
    content_type, _ = parse_options_header(request.headers.get("content-type"))
    if content_type == b"application/json":
        try:
            return ParsedBody(json.loads(await request.body()), {}, True)
        except ValueError:
            return ParsedBody(None, {}, True)
    if content_type not in FORM_CONTENT_TYPES:
        return ParsedBody(None, {}, False)
    try:
        form = await request.form()
    except (HTTPException, MultiPartException):
        return ParsedBody(None, {}, False)
    fields, files = split_multi_items(form.multi_items())
    return ParsedBody(fields, files, False)


@dataclasses.dataclass(frozen=True)
class RequestContext:
    request: Request
    logger: logging.Logger = log
    user: Optional[Mapping[str, Any]] = None


def granted_scopes(user: Optional[Mapping[str, Any]]) -> typing.Set[str]:
    if not user:
        return set()
    scope = user.get("scope")
    if isinstance(scope, str):
        return set(scope.split())
    scopes = user.get("scopes")
    if isinstance(scopes, (list, tuple, set, frozenset)):
        return {s for s in scopes if isinstance(s, str)}
    return set()


def has_scope(ctx: RequestContext, *scopes: str) -> bool:
    return set(scopes) <= granted_scopes(ctx.user)


def require_scope(ctx: RequestContext, *scopes: str) -> Optional[ErrorCode]:
    if has_scope(ctx, *scopes):
        return None
    ctx.logger.warning("Missing required scope(s) %s", " ".join(scopes))
    return ErrorCode.INSUFFICIENT_SCOPE


Callback = Callable[..., Any]


@dataclasses.dataclass
class MicropubCallbacks:
    """The operations a site supports. Only token verification is required.

    Every callback gets the :class:`RequestContext` first, and may be a plain
    function (run in the threadpool) or a coroutine function.
    """

    verify_access_token: Callback
    extension: Optional[Callback] = None
    config_query: Optional[Callback] = None
    source_query: Optional[Callback] = None
    delete: Optional[Callback] = None
    undelete: Optional[Callback] = None
    update: Optional[Callback] = None
    create: Optional[Callback] = None
    media: Optional[Callback] = None
    media_extension: Optional[Callback] = None


def fallback_result(name: str) -> Any:
    if name in ("extension", "media_extension"):
        return False
    if name == "config_query":
        return Empty()
    return Payload(error_payload(ErrorCode.INVALID_REQUEST, NOT_IMPLEMENTED))


async def invoke(func: Callback, *args) -> Any:
    if inspect.iscoroutinefunction(func):
        result = await func(*args)
    else:
        result = await run_in_threadpool(func, *args)
    if inspect.isawaitable(result):
        result = await result
    return result


class MicropubAdapter(object):
    def __init__(self, callbacks: MicropubCallbacks, logger: logging.Logger = None):
        self.callbacks = callbacks
        self.logger = logger or log

    async def call(self, name: str, ctx: RequestContext, *args) -> Any:
        func = getattr(self.callbacks, name)
        if func is None:
            return fallback_result(name)
        return await invoke(func, ctx, *args)

    async def authenticate(
        self, ctx: RequestContext, body: Optional[ParsedBody]
    ) -> typing.Union[RequestContext, Response]:
        token = get_access_token(ctx.request.headers, body.data if body else None)
        if token is None:
            self.logger.warning(ErrorCode.UNAUTHORIZED.description)
            return to_response(ErrorCode.UNAUTHORIZED)
        result = as_result(await self.call("verify_access_token", ctx, token))
        if isinstance(result, RawResponse):
            return result.response
        if isinstance(result, Payload) and isinstance(result.data, Mapping):
            self.logger.info("Access token verified successfully: %r", result.data)
            return dataclasses.replace(ctx, user=result.data)
        self.logger.error(ACCESS_TOKEN_INVALID)
        return to_response(ErrorCode.FORBIDDEN)

    async def prepare(
        self, request: Request
    ) -> Tuple[typing.Union[RequestContext, Response], Optional[ParsedBody]]:
        body = await read_body(request) if request.method == "POST" else None
        ctx = RequestContext(request, logger=self.logger)
        return await self.authenticate(ctx, body), body

    def missing_url(self) -> Response:
        self.logger.warning(MISSING_URL)
        return to_response(error_payload(ErrorCode.INVALID_REQUEST, MISSING_URL))

    async def handle_request(self, request: Request) -> Response:
        ctx, body = await self.prepare(request)
        if isinstance(ctx, Response):
            return ctx

        # Extensions get first refusal over standard handling
        result = as_result(await self.call("extension", ctx))
        if result:
            return to_response(result)

        if request.method == "GET":
            return await self.handle_query(ctx)
        if request.method == "POST":
            return await self.handle_post(ctx, body)
        self.logger.error("Unsupported method %s", request.method)
        return to_response(ErrorCode.INVALID_REQUEST)

    async def handle_query(self, ctx: RequestContext) -> Response:
        params, _ = split_multi_items(ctx.request.query_params.multi_items())
        q = params.get("q")
        if not isinstance(q, str):
            q = None
        if q == "config":
            self.logger.info("Handling config query: %r", params)
            return to_response(await self.call("config_query", ctx, params))
        if q == "source":
            self.logger.info("Handling source query: %r", params)
            properties = params.get("properties")
            if isinstance(properties, str):
                properties = [properties]
            elif not isinstance(properties, list):
                properties = None
            url = params.get("url")
            if not isinstance(url, str):
                return self.missing_url()
            result = await self.call("source_query", ctx, url, properties)
            if result is False:
                self.logger.error(POST_NOT_FOUND)
                result = error_payload(ErrorCode.INVALID_REQUEST, POST_NOT_FOUND)
            return to_response(result)
        if q == "syndicate-to":
            self.logger.info("Handling syndicate-to query: %r", params)
            result = as_result(await self.call("config_query", ctx, params))
            if isinstance(result, RawResponse):
                # Assume the config answer covers this query too
                return result.response
            if (
                isinstance(result, Payload)
                and isinstance(result.data, Mapping)
                and "syndicate-to" in result.data
            ):
                return JSONResponse({"syndicate-to": result.data["syndicate-to"]})
            return JSONResponse({"syndicate-to": []})
        self.logger.error("Unable to handle GET request: %r", params)
        return to_response(ErrorCode.INVALID_REQUEST)

    async def handle_post(self, ctx: RequestContext, body: ParsedBody) -> Response:
        if not isinstance(body.data, Mapping):
            self.logger.error("Request body is not an object")
            return to_response(ErrorCode.INVALID_REQUEST)
        # Never pass the token on to storage
        data = {k: v for k, v in body.data.items() if k != "access_token"}

        action = data.get("action")
        if isinstance(action, str):
            if action == "delete":
                return await self.handle_delete(ctx, data)
            if action == "undelete":
                return await self.handle_undelete(ctx, data)
            if action == "update":
                return await self.handle_update(ctx, data)
            self.logger.error("Unknown action %r", action)
            return to_response(ErrorCode.INVALID_REQUEST)

        if body.is_json:
            item = data
        else:
            self.logger.info("Normalizing form-encoded create request")
            item = normalize_form_create(data)
        self.logger.info("Handling create request: %r", item)
        result = as_result(await self.call("create", ctx, item, body.files))
        if isinstance(result, Location):
            return created(result.url)
        return to_response(result)

    async def handle_delete(self, ctx: RequestContext, data: dict) -> Response:
        self.logger.info("Handling delete request: %r", data)
        url = data.get("url")
        if not isinstance(url, str):
            return self.missing_url()
        result = as_result(await self.call("delete", ctx, url))
        if isinstance(result, Success):
            return no_content()
        return to_response(result)

    async def handle_undelete(self, ctx: RequestContext, data: dict) -> Response:
        self.logger.info("Handling undelete request: %r", data)
        url = data.get("url")
        if not isinstance(url, str):
            return self.missing_url()
        result = as_result(await self.call("undelete", ctx, url))
        if isinstance(result, Success):
            return no_content()
        if isinstance(result, Location):
            return created(result.url)
        return to_response(result)

    async def handle_update(self, ctx: RequestContext, data: dict) -> Response:
        self.logger.info("Handling update request: %r", data)
        url = data.get("url")
        if not isinstance(url, str):
            return self.missing_url()
        for op in UPDATE_OPERATIONS:
            value = data.get(op)
            if value is not None and not isinstance(value, (list, Mapping)):
                self.logger.warning("Update request has a non-array %s: %r", op, value)
                return to_response(ErrorCode.INVALID_REQUEST)
        result = as_result(await self.call("update", ctx, url, data))
        if isinstance(result, Success):
            return no_content()
        if isinstance(result, Location):
            return created(result.url)
        return to_response(result)

    async def handle_media_request(self, request: Request) -> Response:
        ctx, body = await self.prepare(request)
        if isinstance(ctx, Response):
            return ctx

        result = as_result(await self.call("media_extension", ctx))
        if result:
            return to_response(result)

        if request.method != "POST":
            self.logger.error("Unsupported method %s for media", request.method)
            return to_response(ErrorCode.INVALID_REQUEST)

        upload = body.files.get("file")
        if isinstance(upload, UploadFile):
            self.logger.info("Handling media upload %r", upload.filename)
            result = as_result(await self.call("media", ctx, upload))
            if result:
                if isinstance(result, Location):
                    return created(result.url)
                return to_response(result)
        else:
            self.logger.warning("Media request has no file")
        return to_response(ErrorCode.INVALID_REQUEST)

    def endpoint(self) -> "MicropubEndpoint":
        return MicropubEndpoint(self.handle_request)

    def media_endpoint(self) -> "MicropubEndpoint":
        return MicropubEndpoint(self.handle_media_request)


class MicropubEndpoint(object):
    # A plain ASGI app, so Route lets every method through to the dispatcher
    def __init__(self, handler: Callable[[Request], typing.Awaitable[Response]]):
        self.handler = handler

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        try:
            response = await self.handler(request)
            await response(scope, receive, send)
        finally:
            await request.close()


FORWARDED_HEADERS = {
    "x-forwarded-host": "host",
    "x-authorization": "authorization",
}


class ForwardedHeadersMiddleware(object):
    """Deployment glue: copy proxy-renamed headers back onto the originals.

    CloudFront in front of API Gateway rewrites ``Host`` and drops
    ``Authorization``, so the proxy is set up to send them as ``X-`` headers.
    """

    def __init__(self, app: ASGIApp, renames: Mapping[str, str] = None) -> None:
        self.app = app
        self.renames = dict(FORWARDED_HEADERS if renames is None else renames)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http":
            headers = MutableHeaders(scope=scope)
            for source, target in self.renames.items():
                value = headers.get(source)
                if value:
                    headers[target] = value
        await self.app(scope, receive, send)


def env_flag(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def parse_log_level(value: Any, default: str = "INFO") -> str:
    name = str(value).strip().upper()
    if isinstance(logging.getLevelName(name), int):
        return name
    log.warning("Unknown log level %r, using %s", value, default)
    return default


@dataclasses.dataclass(frozen=True)
class Settings:
    micropub_path: str = "/micropub"
    media_path: str = "/micropub/media"
    trust_forwarded: bool = False
    debug: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv(find_dotenv(usecwd=True))
        return cls(
            micropub_path=os.environ.get("MICROPUB_PATH", cls.micropub_path),
            media_path=os.environ.get("MICROPUB_MEDIA_PATH", cls.media_path),
            trust_forwarded=env_flag("MICROPUB_TRUST_FORWARDED"),
            debug=env_flag("MICROPUB_DEBUG"),
            log_level=parse_log_level(
                os.environ.get("MICROPUB_LOG_LEVEL", cls.log_level)
            ),
        )


def create_app(
    callbacks: MicropubCallbacks,
    settings: Settings = None,
    logger: logging.Logger = None,
) -> Starlette:
    if settings is None:
        settings = Settings.from_env()
    if logger is None:
        logger = log
        # Only fill in an unset level; the host app's own configuration wins
        if logger.level == logging.NOTSET:
            logger.setLevel(parse_log_level(settings.log_level))
    adapter = MicropubAdapter(callbacks, logger=logger)
    middleware = []
    if settings.trust_forwarded:
        middleware.append(Middleware(ForwardedHeadersMiddleware))
    return Starlette(
        debug=settings.debug,
        routes=[
            Route(settings.micropub_path, adapter.endpoint(), name="micropub"),
            Route(settings.media_path, adapter.media_endpoint(), name="media"),
        ],
        middleware=middleware,
    )
