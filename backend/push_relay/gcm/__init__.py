"""
GCM 連携モジュール。

- config: GCM API の設定値（エンドポイント, APIキー, タイムアウト, バックオフ）
- schemas: Message / RecipientResult / DeliveryResult などの Pydantic モデル
- client: 1ラウンド分の HTTP 送信と応答の分類
- ledger: ラウンドをまたいだ結果のマージと集約
- service: リトライループ本体と 1件送信・登録 ID 検証のファサード
- router: /gcm/* エンドポイント
"""

from .config import GcmSettings, get_gcm_settings  # noqa: F401
from .service import GcmService, build_gcm_service  # noqa: F401
from .schemas import (  # noqa: F401
    DeliveryReport,
    DeliveryResult,
    DeliveryStatus,
    Message,
    Notification,
    RecipientResult,
)
