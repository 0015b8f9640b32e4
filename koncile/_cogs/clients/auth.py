import base64
import contextlib
import functools
import os
import ssl
import tempfile
from collections.abc import Callable
from contextvars import ContextVar
from typing import Any, TypeVar, cast

import aiohttp

from koncile._cogs.structs import credentials

# The logged-in session of the current controller; the clients take it from here.
# Set by `running.session`, so that every controller's task has the same context.
context_var: ContextVar["APIContext"] = ContextVar('context_var')

_F = TypeVar('_F', bound=Callable[..., Any])


def authenticated(fn: _F) -> _F:
    """
    Provide the API requesting functions with a ``context=`` kwarg.

    An explicitly passed context wins; otherwise, the controller's one is used.
    The responses are remembered in the context, so that they are closed
    together with the session even if the caller has abandoned them.
    """
    @functools.wraps(fn)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        context: APIContext | None = kwargs.get('context')
        if context is None:
            context = context_var.get(None)
            if context is None:
                raise credentials.LoginError("No API context: the controller is not logged in.")
            kwargs['context'] = context

        result = await fn(*args, **kwargs)
        if isinstance(result, aiohttp.ClientResponse):
            context.add_response(result)
        return result

    return cast(_F, wrapper)


def decode_to_pem(data: str | bytes) -> str:
    """ Accept the certificates & keys both as PEM and as base64-encoded PEM. """
    if isinstance(data, bytes):
        return data.decode('ascii') if data.startswith(b'-----BEGIN ') else base64.b64decode(data).decode('ascii')
    return data if data.startswith('-----BEGIN ') else base64.b64decode(data).decode('ascii')


def make_ssl_context(info: credentials.ConnectionInfo) -> ssl.SSLContext:
    """
    Build the TLS settings: the CA to verify the server, and the client's certificate.

    The client's certificate & key can only be loaded from files, so the inline
    data go to temporary files which live only while the context is being built.
    Nothing is written to disk when the paths are given or there are no data.
    """
    with contextlib.ExitStack() as stack:

        def as_path(path: str | None, data: str | bytes | None) -> str | os.PathLike[str] | None:
            if path:
                return path
            if data:
                tmp = stack.enter_context(tempfile.NamedTemporaryFile(buffering=0))
                tmp.write(decode_to_pem(data).encode('ascii'))
                return tmp.name
            return None

        cert_path = as_path(info.certificate_path, info.certificate_data)
        pkey_path = as_path(info.private_key_path, info.private_key_data)
        context = ssl.create_default_context(
            purpose=ssl.Purpose.SERVER_AUTH,
            cafile=info.ca_path,
            cadata=None if info.ca_data is None else decode_to_pem(info.ca_data),
        )
        if cert_path and pkey_path:
            context.load_cert_chain(certfile=cert_path, keyfile=pkey_path)

    if info.insecure:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def make_headers(info: credentials.ConnectionInfo) -> dict[str, str]:
    headers = {'User-Agent': 'koncile'}
    if info.scheme or info.token:
        scheme = info.scheme or 'Bearer'
        headers['Authorization'] = f'{scheme} {info.token}' if info.token else scheme
    return headers


class APIContext:
    """
    One aiohttp session of the controller, with the server it talks to.

    The whole controller lives in one event loop, so one session is enough.
    The sync reconcilers run in threads, but make no API calls via this session.
    """

    session: aiohttp.ClientSession
    server: str
    default_namespace: str | None
    responses: list[aiohttp.ClientResponse]

    def __init__(self, info: credentials.ConnectionInfo) -> None:
        super().__init__()
        basic_auth = None
        if info.username and info.password:
            basic_auth = aiohttp.BasicAuth(info.username, info.password)
        self.session = aiohttp.ClientSession(
            connector=aiohttp.TCPConnector(limit=0, ssl=make_ssl_context(info)),
            headers=make_headers(info),
            auth=basic_auth,
        )
        self.server = info.server
        self.default_namespace = info.default_namespace
        self.responses = []

    def add_response(self, response: aiohttp.ClientResponse) -> None:
        self.responses = [known for known in self.responses if not known.closed]
        if not response.closed:
            self.responses.append(response)

    async def close(self) -> None:
        # The open responses (e.g. of the watch-streams) hold the connections.
        while self.responses:
            response = self.responses.pop()
            if not response.closed:
                response.close()
        await self.session.close()
