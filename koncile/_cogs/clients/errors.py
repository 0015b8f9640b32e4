"""
The errors of the Kubernetes API, as classified by the HTTP status.

The few statuses that the controller reacts to have their own classes:
404 for the objects deleted meanwhile, 410 for the expired resource versions
of the watch-streams, 429 for throttling, 5xx for the retryable failures.
All other statuses become the generic client or server errors.

The network and TLS failures are not wrapped: they come from aiohttp as is.
The aiohttp's own response error is kept as the cause of our error.
"""
import collections.abc
import json
from collections.abc import Collection
from typing import Literal

import aiohttp
from typing_extensions import TypedDict


class RawStatusCause(TypedDict):
    field: str
    reason: str
    message: str


class RawStatusDetails(TypedDict, total=False):
    name: str
    uid: str
    retryAfterSeconds: int
    kind: str
    group: str
    causes: Collection[RawStatusCause]


# The API's own error payload (a "Status" object of the "meta/v1" group).
class RawStatus(TypedDict, total=False):
    apiVersion: str
    kind: Literal["Status"]
    code: int
    status: Literal["Success", "Failure"]
    reason: str
    message: str
    details: RawStatusDetails


class APIError(Exception):

    def __init__(self, payload: RawStatus | None, *, status: int) -> None:
        self.payload: RawStatus = payload or {}
        self.status = status
        super().__init__(self.message, payload)

    @property
    def code(self) -> int | None:
        return self.payload.get('code')

    @property
    def message(self) -> str | None:
        return self.payload.get('message')

    @property
    def details(self) -> RawStatusDetails | None:
        return self.payload.get('details')

    @property
    def retry_after(self) -> float | None:
        return (self.details or {}).get('retryAfterSeconds')


class APIClientError(APIError):
    pass


class APIServerError(APIError):
    pass


class APIUnauthorizedError(APIClientError):
    pass


class APIForbiddenError(APIClientError):
    pass


class APINotFoundError(APIClientError):
    pass


class APIConflictError(APIClientError):
    pass


class APIGoneError(APIClientError):
    pass


class APITooManyRequestsError(APIClientError):
    pass


SPECIFIC_ERRORS: dict[int, type[APIError]] = {
    401: APIUnauthorizedError,
    403: APIForbiddenError,
    404: APINotFoundError,
    409: APIConflictError,
    410: APIGoneError,
    429: APITooManyRequestsError,
}


def classify(status: int) -> type[APIError]:
    if status in SPECIFIC_ERRORS:
        return SPECIFIC_ERRORS[status]
    elif status >= 500:
        return APIServerError
    elif status >= 400:
        return APIClientError
    else:
        return APIError


async def check_response(response: aiohttp.ClientResponse) -> None:
    """
    Raise an error of the status's class if the response is not successful.

    The error's payload is only taken if it is a "Status" object:
    arbitrary bodies of the failed responses are not exposed in the errors.
    """
    if response.status < 400:
        return

    # The body is read before raise_for_status(), which releases the response.
    payload: RawStatus | None
    try:
        payload = await response.json()
    except (json.JSONDecodeError, aiohttp.ContentTypeError, aiohttp.ClientConnectionError):
        payload = None
    if not isinstance(payload, collections.abc.Mapping) or payload.get('kind') != 'Status':
        payload = None

    try:
        response.raise_for_status()
    except aiohttp.ClientResponseError as e:
        raise classify(response.status)(payload, status=response.status) from e
