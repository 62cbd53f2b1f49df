# backend/push_relay/gcm/schemas.py

"""
GCM 送信用の Pydantic スキーマ定義。

- 送信メッセージ（Message / Notification）
- 受信者ごとの結果（RecipientResult）
- 1ラウンド分の結果（BatchOutcome）と最終結果（DeliveryResult）
- リトライループ全体の結果（DeliveryReport）
- /gcm/* のリクエスト / レスポンス
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .constants import (
    ERROR_INVALID_REGISTRATION,
    MAX_TIME_TO_LIVE_SECONDS,
    MESSAGE_PRIORITY_HIGH,
    MESSAGE_PRIORITY_NORMAL,
    RETRIABLE_ERRORS,
)
from .errors import (
    GcmClientError,
    GcmDeliveryCancelled,
    GcmInternalError,
    GcmInvalidRequestError,
    GcmProtocolError,
    GcmUnavailableError,
)


class Priority(str, Enum):
    """メッセージの配信優先度。"""

    NORMAL = MESSAGE_PRIORITY_NORMAL
    HIGH = MESSAGE_PRIORITY_HIGH


class Notification(BaseModel):
    """
    表示用の通知ブロック。

    内容の意味（ローカライズ等）はここでは解釈せず、そのまま GCM に渡す。
    """

    model_config = ConfigDict(frozen=True)

    title: Optional[str] = None
    body: Optional[str] = None
    icon: Optional[str] = None
    sound: Optional[str] = Field(
        "default",
        description="通知音。GCM が現在サポートしている値は 'default' のみ。",
    )
    badge: Optional[int] = None
    tag: Optional[str] = None
    color: Optional[str] = None
    click_action: Optional[str] = None
    body_loc_key: Optional[str] = None
    body_loc_args: Optional[List[str]] = None
    title_loc_key: Optional[str] = None
    title_loc_args: Optional[List[str]] = None


class Message(BaseModel):
    """
    送信メッセージ 1件分。

    未設定（None）のフィールドはリクエスト JSON に含めない。
    """

    model_config = ConfigDict(frozen=True)

    priority: Optional[Priority] = Field(None, description="normal / high")
    time_to_live: Optional[int] = Field(
        None,
        ge=0,
        le=MAX_TIME_TO_LIVE_SECONDS,
        description="端末がオフラインの場合に保持する秒数（最大4週間）。",
    )
    collapse_key: Optional[str] = None
    restricted_package_name: Optional[str] = None
    delay_while_idle: Optional[bool] = None
    dry_run: Optional[bool] = Field(
        None,
        description="True の場合、GCM は実際には配信せず検証だけを行う。",
    )
    data: Dict[str, str] = Field(
        default_factory=dict,
        description="アプリに渡すキー/値ペイロード。",
    )
    notification: Optional[Notification] = None


class DeliveryRequest(BaseModel):
    """
    1回の送信呼び出しの入力。

    registration_ids は順序を保持し、重複もそのまま残す。
    """

    model_config = ConfigDict(frozen=True)

    message: Message = Field(default_factory=Message)
    registration_ids: List[str] = Field(
        ...,
        min_length=1,
        description="送信先の登録 ID（空は不可）。",
    )


class RecipientResult(BaseModel):
    """
    受信者 1件分の結果。

    - 配信成功: message_id（＋任意で canonical_registration_id）
    - 失敗: error_code
    のどちらか一方だけを持つ。
    """

    model_config = ConfigDict(frozen=True)

    message_id: Optional[str] = None
    canonical_registration_id: Optional[str] = None
    error_code: Optional[str] = None

    @model_validator(mode="after")
    def _check_exactly_one_variant(self) -> "RecipientResult":
        if (self.message_id is None) == (self.error_code is None):
            raise ValueError("exactly one of message_id / error_code must be set")
        if self.error_code is not None and self.canonical_registration_id is not None:
            raise ValueError("canonical_registration_id is only valid for delivered results")
        return self

    @classmethod
    def delivered(
        cls,
        message_id: str,
        canonical_registration_id: Optional[str] = None,
    ) -> "RecipientResult":
        return cls(
            message_id=message_id,
            canonical_registration_id=canonical_registration_id,
        )

    @classmethod
    def failed(cls, error_code: str) -> "RecipientResult":
        return cls(error_code=error_code)

    @property
    def is_delivered(self) -> bool:
        return self.message_id is not None

    @property
    def is_retriable(self) -> bool:
        return self.error_code in RETRIABLE_ERRORS

    @property
    def is_invalid_registration(self) -> bool:
        return self.error_code == ERROR_INVALID_REGISTRATION


class BatchOutcome(BaseModel):
    """
    1ラウンド（1回の POST）分の結果。

    results の長さと順序は、そのラウンドで送信した registration_ids と一致する前提。
    """

    multicast_id: int
    success: int
    failure: int
    canonical_ids: int
    results: List[RecipientResult]


class DeliveryResult(BaseModel):
    """
    全ラウンドを集約した最終結果。

    results は呼び出し元が渡した registration_ids と同じ順序・同じ件数。
    """

    success: int = Field(..., ge=0, description="配信に成功した件数")
    failure: int = Field(..., ge=0, description="最終的に失敗した件数")
    canonical_ids: int = Field(..., ge=0, description="canonical id が返された件数")
    multicast_id: int = Field(..., description="最初に応答を得たラウンドの multicast_id")
    retry_multicast_ids: List[int] = Field(
        default_factory=list,
        description="2回目以降のラウンドの multicast_id",
    )
    results: List[RecipientResult]


class DeliveryStatus(str, Enum):
    """リトライループ全体の終了理由。"""

    COMPLETED = "completed"
    PROTOCOL_ERROR = "protocol_error"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"
    INTERNAL_ERROR = "internal_error"


class DeliveryFailure(BaseModel):
    """COMPLETED 以外で終わった場合の詳細。"""

    message: str
    status_code: Optional[int] = Field(
        None,
        description="GCM が返した HTTP ステータス（拒否された場合のみ）。",
    )
    body: Optional[str] = Field(
        None,
        description="GCM のレスポンス本文（診断用にそのまま保持）。",
    )


class DeliveryReport(BaseModel):
    """
    send_multicast() の戻り値。

    status で分岐し、COMPLETED の場合のみ result を持つ。
    受信者単位の失敗（InvalidRegistration など）は COMPLETED の result 側に入る。
    """

    status: DeliveryStatus
    attempts: int = Field(..., ge=0)
    result: Optional[DeliveryResult] = None
    error: Optional[DeliveryFailure] = None
    pending_registration_ids: List[str] = Field(
        default_factory=list,
        description="リトライ回数を使い切った時点で再送待ちだった登録 ID。",
    )

    @property
    def is_completed(self) -> bool:
        return self.status == DeliveryStatus.COMPLETED

    def raise_for_error(self) -> None:
        """
        COMPLETED 以外なら対応する GcmClientError サブクラスを投げる。
        """
        if self.is_completed:
            return

        error = self.error or DeliveryFailure(message=self.status.value)
        if self.status == DeliveryStatus.PROTOCOL_ERROR:
            if error.status_code is not None:
                raise GcmInvalidRequestError(error.status_code, error.body)
            raise GcmProtocolError(error.message, error.body)
        if self.status == DeliveryStatus.EXHAUSTED:
            raise GcmUnavailableError(self.attempts)
        if self.status == DeliveryStatus.CANCELLED:
            raise GcmDeliveryCancelled(error.message)
        if self.status == DeliveryStatus.INTERNAL_ERROR:
            raise GcmInternalError(error.message)
        raise GcmClientError(error.message)


# ---- /gcm/* API スキーマ ---------------------------------------------


class SendRequest(DeliveryRequest):
    """
    /gcm/send のリクエストボディ。
    """

    retries: Optional[int] = Field(
        None,
        ge=0,
        le=20,
        description="応答なし / Unavailable 時の再送回数。未指定なら設定値を使う。",
    )


class SendResponse(DeliveryResult):
    """
    /gcm/send のレスポンスボディ。
    """

    pending_registration_ids: List[str] = Field(
        default_factory=list,
        description="リトライ回数を使い切った時点で再送待ちだった登録 ID。",
    )

    @classmethod
    def from_report(cls, report: DeliveryReport) -> "SendResponse":
        return cls(
            **report.result.model_dump(),
            pending_registration_ids=list(report.pending_registration_ids),
        )


class RegistrationCheckRequest(BaseModel):
    """/gcm/registrations/validate のリクエストボディ。"""

    registration_id: str = Field(..., min_length=1)


class RegistrationCheckResponse(BaseModel):
    """/gcm/registrations/validate のレスポンスボディ。"""

    registration_id: str
    valid: bool
