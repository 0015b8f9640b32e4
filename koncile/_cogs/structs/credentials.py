"""
The credentials and the endpoint of the Kubernetes API.

Only what a generic HTTP client needs: the server's URL, the TLS settings,
the ``Authorization`` header's parts, and the namespace implied by the login
(e.g. of the service account). How they are obtained is up to :mod:`piggybacking`.
"""
import dataclasses


class LoginError(Exception):
    """ Raised when the controller cannot login to the API. """


@dataclasses.dataclass(frozen=True)
class ConnectionInfo:
    server: str  # e.g. "https://localhost:443"
    ca_path: str | None = None
    ca_data: bytes | None = None
    insecure: bool | None = None
    username: str | None = None
    password: str | None = None
    scheme: str | None = None  # e.g. Bearer, Basic; "Bearer" if only a token is given.
    token: str | None = None
    certificate_path: str | None = None
    certificate_data: bytes | None = None
    private_key_path: str | None = None
    private_key_data: bytes | None = None
    default_namespace: str | None = None
