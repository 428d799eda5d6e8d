from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import requests

logger = logging.getLogger(__name__)

PING_TIMEOUT_S = 5
FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
JSON_CONTENT_TYPE = "application/json"


@dataclass
class PingResult:
    url: str
    status_code: int | None
    network_error: str | None = None

    @property
    def delivered(self) -> bool:
        return self.status_code is not None and 200 <= self.status_code < 300

    @property
    def should_retry(self) -> bool:
        return self.status_code is not None and self.status_code >= 500


def _escape_key(key: Any) -> str:
    return str(key).replace("[", "%5B").replace("]", "%5D")


def encode_form_params(params: Mapping[str, Any], prefix: str = "") -> list[tuple[str, str]]:
    """Flatten ``params`` into form pairs.

    Brackets inside seller-provided keys are percent-encoded first so that
    nesting brackets (``custom_fields[name]``) stay unambiguous.
    """
    pairs: list[tuple[str, str]] = []
    for raw_key, value in params.items():
        key = _escape_key(raw_key)
        name = f"{prefix}[{key}]" if prefix else key
        if isinstance(value, Mapping):
            pairs.extend(encode_form_params(value, name))
        elif isinstance(value, (list, tuple)):
            for item in value:
                pairs.append((f"{name}[]", _form_value(item)))
        else:
            pairs.append((name, _form_value(value)))
    return pairs


def _form_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def post_ping(url: str, params: Mapping[str, Any], content_type: str = FORM_CONTENT_TYPE) -> PingResult:
    """POST one ping; connection failures are logged and reported, never raised."""
    if content_type == JSON_CONTENT_TYPE:
        body: Any = json.dumps(dict(params), ensure_ascii=False, sort_keys=True)
    else:
        content_type = FORM_CONTENT_TYPE
        body = encode_form_params(params)
    try:
        response = requests.post(
            url,
            data=body,
            headers={"Content-Type": content_type},
            timeout=PING_TIMEOUT_S,
        )
    except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as exc:
        logger.warning(
            "ping_network_error error=%r url=%s content_type=%s params=%s",
            str(exc),
            url,
            content_type,
            dict(params),
        )
        return PingResult(url=url, status_code=None, network_error=type(exc).__name__)
    logger.info(
        "ping_response response=%s url=%s content_type=%s params=%s",
        response.status_code,
        url,
        content_type,
        dict(params),
    )
    return PingResult(url=url, status_code=int(response.status_code))
