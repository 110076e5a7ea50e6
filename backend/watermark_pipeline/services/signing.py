"""
Watermark Pipeline Backend — HMAC Request Signing
===================================================

What:  Builds the canonical query string and the HMAC-SHA256 signature
       the remote watermark service expects on every request.
How:   Pure functions over strings; the only clock read is `http_date()`,
       which callers invoke once per attempt.
Who:   WatermarkServiceClient.

String to sign (every line terminated by "\\n"):
    METHOD
    /request/path
    canonical_query
    access_key
    Date header value
"""

import base64
import hashlib
import hmac
import json
from email.utils import formatdate
from typing import Any, Mapping
from urllib.parse import quote

from watermark_pipeline.exceptions import SigningError

# Characters JavaScript's encodeURIComponent leaves untouched, on top of
# the alphanumerics quote() never escapes.
_URI_COMPONENT_SAFE = "-_.!~*'()"


def _encode_component(value: str) -> str:
    return quote(value, safe=_URI_COMPONENT_SAFE)


def _stringify(value: Any) -> str:
    """Scalar rendering used in the query: None → '', bools lowercase, containers as compact JSON."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    return str(value)


def build_canonical_query(params: Mapping[str, Any]) -> str:
    """
    Render query parameters in canonical form.

    - keys in lexicographic order
    - a list/tuple value emits one `key=value` pair per element, elements
      ordered by their rendered string
    - values percent-encoded like encodeURIComponent; keys are left as is

    The result is used verbatim both in the string to sign and in the URL.
    """
    if not params:
        return ""

    pairs = []
    for key in sorted(params):
        value = params[key]
        if isinstance(value, (list, tuple)):
            for rendered in sorted(_stringify(v) for v in value):
                pairs.append(f"{key}={_encode_component(rendered)}")
        else:
            pairs.append(f"{key}={_encode_component(_stringify(value))}")
    return "&".join(pairs)


def http_date() -> str:
    """Current time in RFC 1123 GMT form, e.g. 'Mon, 19 Oct 2026 10:00:00 GMT'."""
    return formatdate(usegmt=True)


def sign_request(
    method: str,
    path: str,
    canonical_query: str,
    access_key: str,
    date: str,
    secret_key: str,
) -> str:
    """
    Base64 HMAC-SHA256 of the string to sign, keyed by `secret_key`.

    Deterministic: identical inputs always give the identical signature.

    Raises:
        SigningError: secret_key is empty
    """
    if not secret_key:
        raise SigningError()

    sign_string = f"{method.upper()}\n{path}\n{canonical_query}\n{access_key}\n{date}\n"
    digest = hmac.new(
        secret_key.encode("utf-8"),
        sign_string.encode("utf-8"),
        hashlib.sha256,
    ).digest()
    return base64.b64encode(digest).decode("ascii")


class RequestSigner:
    """
    Holds the credentials and produces the full set of auth headers.

    The Date header and the signature are recomputed on every call, so each
    retry attempt carries a fresh pair.
    """

    def __init__(self, access_key: str, secret_key: str, algorithm: str = "hmac-sha256"):
        self.access_key = access_key
        self._secret_key = secret_key
        self.algorithm = algorithm

    def sign(self, method: str, path: str, canonical_query: str, date: str) -> str:
        return sign_request(method, path, canonical_query, self.access_key, date, self._secret_key)

    def auth_headers(self, method: str, path: str, canonical_query: str = "") -> dict:
        if not self.access_key:
            raise SigningError("Request signing failed: access key is not configured")
        date = http_date()
        return {
            "Date": date,
            "X-HMAC-ALGORITHM": self.algorithm,
            "X-HMAC-ACCESS-KEY": self.access_key,
            "X-HMAC-SIGNATURE": self.sign(method, path, canonical_query, date),
        }
