# backend/push_relay/gcm/errors.py

"""
GCM 連携の例外階層。

コアのリトライループ内ではこれらを「値」として DeliveryReport / RoundResult に載せて扱い、
呼び出し側（ファサード・ルーター・CLI）で必要に応じて raise する。
"""

from typing import Optional


class GcmClientError(Exception):
    """GCM 連携全般の基底例外。"""


class GcmInvalidRequestError(GcmClientError):
    """GCM が HTTP 200 以外を返した場合の例外（リクエスト形式・認証の拒否）。"""

    def __init__(self, status_code: int, body: Optional[str] = None) -> None:
        super().__init__(f"GCM rejected the request: status_code={status_code}")
        self.status_code = status_code
        self.body = body


class GcmProtocolError(GcmClientError):
    """HTTP 200 だがレスポンス本文が解釈できない / 必須フィールドが欠けている場合の例外。"""

    def __init__(self, message: str, body: Optional[str] = None) -> None:
        super().__init__(message)
        self.body = body


class GcmUnavailableError(GcmClientError):
    """リトライ回数内に一度も GCM から応答を得られなかった場合の例外。"""

    def __init__(self, attempts: int) -> None:
        super().__init__(f"GCM gateway unreachable after {attempts} attempts")
        self.attempts = attempts


class GcmDeliveryCancelled(GcmClientError):
    """呼び出し側のキャンセル / タイムアウトで送信を打ち切った場合の例外。"""


class GcmInternalError(GcmClientError):
    """内部整合性エラー（応答件数の不一致など）。リトライしない。"""


class LedgerConsistencyError(GcmInternalError):
    """ラウンドの結果件数が送信した受信者数と一致しない場合の例外。"""
