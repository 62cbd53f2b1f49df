# backend/push_relay/gcm/client.py

"""
GCM HTTP エンドポイントとの通信を担当するクライアントモジュール。

1回の呼び出し = 1ラウンド（1回の POST）。結果は例外ではなく RoundResult で返す:
- OUTCOME: HTTP 200 かつ本文を解釈できた
- INDETERMINATE: 接続エラー・タイムアウトなど（ラウンドごとやり直してよい）
- TERMINAL: 200 以外 / 本文が不正（やり直さない）

受信者ごとのエラーコードはここでは見ない。分類はサービス層の責務。
"""

from __future__ import annotations

import json
import math
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import httpx

from . import constants as c
from .config import GcmSettings, get_gcm_settings
from .errors import GcmClientError, GcmInvalidRequestError, GcmProtocolError
from .schemas import BatchOutcome, Message, RecipientResult

logger = logging.getLogger(__name__)


class RoundStatus(str, Enum):
    OUTCOME = "outcome"
    INDETERMINATE = "indeterminate"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class RoundResult:
    """1ラウンド分の送信結果（タグ付き）。"""

    status: RoundStatus
    outcome: Optional[BatchOutcome] = None
    error: Optional[GcmClientError] = None
    reason: Optional[str] = None

    @classmethod
    def success(cls, outcome: BatchOutcome) -> "RoundResult":
        return cls(status=RoundStatus.OUTCOME, outcome=outcome)

    @classmethod
    def indeterminate(cls, reason: str) -> "RoundResult":
        return cls(status=RoundStatus.INDETERMINATE, reason=reason)

    @classmethod
    def terminal(cls, error: GcmClientError) -> "RoundResult":
        return cls(status=RoundStatus.TERMINAL, error=error, reason=str(error))


def _set_field(json_obj: Dict[str, Any], field: str, value: Any) -> None:
    """値が None でない場合だけフィールドを設定する。"""
    if value is not None:
        json_obj[field] = value


def build_request_body(message: Message, registration_ids: Sequence[str]) -> Dict[str, Any]:
    """
    Message と送信先から GCM の JSON リクエストボディを組み立てる。

    :raises ValueError: registration_ids が空の場合
    """
    if not registration_ids:
        raise ValueError("registration_ids must not be empty")

    body: Dict[str, Any] = {}
    _set_field(body, c.PARAM_PRIORITY, message.priority.value if message.priority else None)
    _set_field(body, c.PARAM_TIME_TO_LIVE, message.time_to_live)
    _set_field(body, c.PARAM_COLLAPSE_KEY, message.collapse_key)
    _set_field(body, c.PARAM_RESTRICTED_PACKAGE_NAME, message.restricted_package_name)
    _set_field(body, c.PARAM_DELAY_WHILE_IDLE, message.delay_while_idle)
    _set_field(body, c.PARAM_DRY_RUN, message.dry_run)
    body[c.JSON_REGISTRATION_IDS] = list(registration_ids)

    if message.data:
        body[c.JSON_PAYLOAD] = dict(message.data)

    notification = message.notification
    if notification is not None:
        n_body: Dict[str, Any] = {}
        if notification.badge is not None:
            # GCM は badge を文字列で受け取る
            n_body[c.JSON_NOTIFICATION_BADGE] = str(notification.badge)
        _set_field(n_body, c.JSON_NOTIFICATION_BODY, notification.body)
        _set_field(n_body, c.JSON_NOTIFICATION_BODY_LOC_ARGS, notification.body_loc_args)
        _set_field(n_body, c.JSON_NOTIFICATION_BODY_LOC_KEY, notification.body_loc_key)
        _set_field(n_body, c.JSON_NOTIFICATION_CLICK_ACTION, notification.click_action)
        _set_field(n_body, c.JSON_NOTIFICATION_COLOR, notification.color)
        _set_field(n_body, c.JSON_NOTIFICATION_ICON, notification.icon)
        _set_field(n_body, c.JSON_NOTIFICATION_SOUND, notification.sound)
        _set_field(n_body, c.JSON_NOTIFICATION_TAG, notification.tag)
        _set_field(n_body, c.JSON_NOTIFICATION_TITLE, notification.title)
        _set_field(n_body, c.JSON_NOTIFICATION_TITLE_LOC_ARGS, notification.title_loc_args)
        _set_field(n_body, c.JSON_NOTIFICATION_TITLE_LOC_KEY, notification.title_loc_key)
        body[c.JSON_NOTIFICATION] = n_body

    return body


def _get_number(json_obj: Dict[str, Any], field: str) -> int:
    value = json_obj.get(field)
    if value is None:
        raise GcmProtocolError(f"Missing field: {field}")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise GcmProtocolError(f"Field {field} does not contain a number: {value!r}")
    if isinstance(value, float) and not math.isfinite(value):
        raise GcmProtocolError(f"Field {field} is not a finite number: {value!r}")
    return int(value)


def _get_optional_str(json_obj: Dict[str, Any], field: str) -> Optional[str]:
    value = json_obj.get(field)
    if value is not None and not isinstance(value, str):
        raise GcmProtocolError(f"Field {field} does not contain a string: {value!r}")
    return value


def _parse_result(json_result: Any) -> RecipientResult:
    if not isinstance(json_result, dict):
        raise GcmProtocolError(f"Result entry is not an object: {json_result!r}")

    message_id = _get_optional_str(json_result, c.JSON_MESSAGE_ID)
    canonical_reg_id = _get_optional_str(json_result, c.TOKEN_CANONICAL_REG_ID)
    error = _get_optional_str(json_result, c.JSON_ERROR)

    if (message_id is None) == (error is None):
        raise GcmProtocolError(
            f"Result entry must contain exactly one of message_id / error: {json_result!r}"
        )
    if message_id is not None:
        return RecipientResult.delivered(message_id, canonical_reg_id)
    return RecipientResult.failed(error)


def parse_response_body(response_body: str) -> BatchOutcome:
    """
    HTTP 200 のレスポンス本文を BatchOutcome に変換する。

    :raises GcmProtocolError: JSON でない / 必須フィールド欠落 / 型違いの場合
    """
    try:
        json_response = json.loads(response_body)
    except ValueError as exc:
        raise GcmProtocolError(
            f"Error parsing JSON response ({response_body})", body=response_body
        ) from exc

    if not isinstance(json_response, dict):
        raise GcmProtocolError("JSON response is not an object", body=response_body)

    try:
        success = _get_number(json_response, c.JSON_SUCCESS)
        failure = _get_number(json_response, c.JSON_FAILURE)
        canonical_ids = _get_number(json_response, c.JSON_CANONICAL_IDS)
        multicast_id = _get_number(json_response, c.JSON_MULTICAST_ID)

        json_results = json_response.get(c.JSON_RESULTS)
        if not isinstance(json_results, list):
            raise GcmProtocolError(f"Field {c.JSON_RESULTS} is missing or not a list")
        results: List[RecipientResult] = [_parse_result(r) for r in json_results]
    except GcmProtocolError as exc:
        raise GcmProtocolError(str(exc), body=response_body) from exc

    return BatchOutcome(
        multicast_id=multicast_id,
        success=success,
        failure=failure,
        canonical_ids=canonical_ids,
        results=results,
    )


class GcmClient:
    """
    GCM 送信 API への HTTP クライアント。

    ラウンドごとに httpx.Client を生成するため、インスタンス自体は状態を持たず、
    複数スレッドから同時に使ってよい。
    """

    def __init__(
        self,
        settings: GcmSettings | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._settings = settings or get_gcm_settings()
        self._transport = transport

        if not self._settings.send_endpoint.startswith("https://"):
            logger.warning("GCM endpoint does not use https: %s", self._settings.send_endpoint)

    @property
    def endpoint(self) -> str:
        return self._settings.send_endpoint

    @property
    def timeout(self) -> int:
        return self._settings.timeout_seconds

    def _build_headers(self) -> Dict[str, str]:
        """
        GCM API 呼び出しに使用する HTTP ヘッダを構築する。
        """
        return {
            "Content-Type": "application/json",
            "Authorization": f"key={self._settings.api_key}",
        }

    def send_no_retry(self, message: Message, registration_ids: Sequence[str]) -> RoundResult:
        """
        registration_ids 宛に 1回だけ POST し、結果を分類して返す。

        :raises ValueError: registration_ids が空の場合（呼び出し側のバグ）
        """
        payload = build_request_body(message, registration_ids)
        logger.debug("GCM request body: %s", payload)

        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(
                    self.endpoint,
                    json=payload,
                    headers=self._build_headers(),
                )
        except httpx.RequestError as exc:  # 接続エラー・タイムアウトなど
            logger.debug("Error posting to GCM: %s", exc)
            return RoundResult.indeterminate(f"{type(exc).__name__}: {exc}")

        if response.status_code != 200:
            logger.debug("GCM error response: %s %s", response.status_code, response.text)
            return RoundResult.terminal(
                GcmInvalidRequestError(response.status_code, response.text)
            )

        logger.debug("GCM response body: %s", response.text)
        try:
            outcome = parse_response_body(response.text)
        except GcmProtocolError as exc:
            logger.warning("Unparsable GCM response: %s", exc)
            return RoundResult.terminal(exc)

        return RoundResult.success(outcome)
